"""
Organizer Progression Engine

Folds an organizer's history in one workshop family into statistics and
walks the family's RoleLevel ladder.

  - Statistics: closed, non-formation workshops organized (total / in-person
    / remote), formation types attended, feedback aggregate
  - Each RoleRequirement threshold is an independent check function in
    REQUIREMENT_CHECKS; a level's checks are combined with AND
  - Ladder walk in ascending level: a level is unlocked only if its own
    checks pass and every lower level is unlocked
  - A level without a RoleRequirement is locked

Usage:
    from atelier.services.progression import get_user_progression, require_level

    result = get_user_progression(user_id, family_id)
    require_level(user_id, family_id, level=2)   # raises RequirementNotMetError
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable

from sqlalchemy import func, select

from atelier.core.exceptions import NotFoundError, RequirementNotMetError
from atelier.models import db
from atelier.models.feedback import ParticipantFeedback
from atelier.models.participation import Participation
from atelier.models.progression import RoleLevel
from atelier.models.user import User
from atelier.models.workshop import Workshop, WorkshopFamily, WorkshopType

logger = logging.getLogger(__name__)


# ═════════════════════════════════════════════════════════════════════════════
# Data Classes
# ═════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class FeedbackAggregate:
    count: int = 0
    average: float = 0.0


FeedbackProvider = Callable[[str, str], FeedbackAggregate]


@dataclass(frozen=True)
class ProgressionStats:
    workshops_total: int = 0
    workshops_in_person: int = 0
    workshops_remote: int = 0
    formation_codes: frozenset = frozenset()
    feedback_count: int = 0
    feedback_avg: float = 0.0

    @property
    def any_progress(self) -> bool:
        return bool(self.workshops_total or self.feedback_count or self.formation_codes)

    def to_dict(self) -> dict:
        return {
            "workshops_total": self.workshops_total,
            "workshops_in_person": self.workshops_in_person,
            "workshops_remote": self.workshops_remote,
            "formation_codes": sorted(self.formation_codes),
            "feedback_count": self.feedback_count,
            "feedback_avg": round(self.feedback_avg, 2),
        }


@dataclass(frozen=True)
class RequirementSpec:
    """Plain thresholds of one RoleRequirement."""
    min_workshops_total: int = 0
    min_workshops_in_person: int = 0
    min_workshops_remote: int = 0
    min_feedback_count: int = 0
    min_feedback_avg: float = 0.0
    required_formation_types: frozenset = frozenset()


@dataclass(frozen=True)
class LevelSpec:
    level: int
    code: str
    label: str = ""
    requirement: RequirementSpec | None = None


@dataclass
class CheckResult:
    """Outcome of one threshold check."""
    name: str
    passed: bool
    current: float
    required: float
    missing: list = field(default_factory=list)

    @property
    def shortfall(self) -> float:
        """Relative distance to the threshold (0 when met, 1 when nothing done)."""
        if self.passed or not self.required:
            return 0.0
        return max(0.0, (self.required - self.current) / self.required)

    def describe(self) -> str:
        if self.name == "required_formation_types":
            return f"missing formations: {', '.join(self.missing)}"
        return f"{self.name}: {self.current:g}/{self.required:g}"

    def to_dict(self) -> dict:
        d = {"name": self.name, "passed": self.passed,
             "current": self.current, "required": self.required}
        if self.missing:
            d["missing"] = list(self.missing)
        return d


@dataclass
class LevelResult:
    level: int
    code: str
    label: str
    unlocked: bool
    status: str
    has_requirement: bool
    checks: list[CheckResult] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "level": self.level,
            "code": self.code,
            "label": self.label,
            "unlocked": self.unlocked,
            "status": self.status,
            "has_requirement": self.has_requirement,
            "checks": [c.to_dict() for c in self.checks],
        }


@dataclass
class ProgressionResult:
    current_level: int
    levels: list[LevelResult]
    stats: ProgressionStats
    locked_level: int | None = None
    reason: str | None = None

    def level(self, number: int) -> LevelResult | None:
        return next((lv for lv in self.levels if lv.level == number), None)

    def to_dict(self) -> dict:
        return {
            "current_level": self.current_level,
            "levels": [lv.to_dict() for lv in self.levels],
            "stats": self.stats.to_dict(),
            "locked_level": self.locked_level,
            "reason": self.reason,
        }


# ═════════════════════════════════════════════════════════════════════════════
# Requirement checks: one function per threshold
# ═════════════════════════════════════════════════════════════════════════════

def check_workshops_total(req: RequirementSpec, stats: ProgressionStats) -> CheckResult:
    return CheckResult("min_workshops_total", stats.workshops_total >= req.min_workshops_total,
                       stats.workshops_total, req.min_workshops_total)


def check_workshops_in_person(req: RequirementSpec, stats: ProgressionStats) -> CheckResult:
    return CheckResult("min_workshops_in_person",
                       stats.workshops_in_person >= req.min_workshops_in_person,
                       stats.workshops_in_person, req.min_workshops_in_person)


def check_workshops_remote(req: RequirementSpec, stats: ProgressionStats) -> CheckResult:
    return CheckResult("min_workshops_remote", stats.workshops_remote >= req.min_workshops_remote,
                       stats.workshops_remote, req.min_workshops_remote)


def check_feedback_count(req: RequirementSpec, stats: ProgressionStats) -> CheckResult:
    return CheckResult("min_feedback_count", stats.feedback_count >= req.min_feedback_count,
                       stats.feedback_count, req.min_feedback_count)


def check_feedback_avg(req: RequirementSpec, stats: ProgressionStats) -> CheckResult:
    return CheckResult("min_feedback_avg", stats.feedback_avg >= req.min_feedback_avg,
                       round(stats.feedback_avg, 2), req.min_feedback_avg)


def check_required_formations(req: RequirementSpec, stats: ProgressionStats) -> CheckResult:
    required = set(req.required_formation_types or ())
    missing = sorted(required - set(stats.formation_codes))
    return CheckResult("required_formation_types", not missing,
                       len(required) - len(missing), len(required), missing=missing)


REQUIREMENT_CHECKS = (
    check_workshops_total,
    check_workshops_in_person,
    check_workshops_remote,
    check_feedback_count,
    check_feedback_avg,
    check_required_formations,
)


def evaluate_requirement(req: RequirementSpec, stats: ProgressionStats) -> list[CheckResult]:
    return [check(req, stats) for check in REQUIREMENT_CHECKS]


# ═════════════════════════════════════════════════════════════════════════════
# Ladder walk (pure)
# ═════════════════════════════════════════════════════════════════════════════

def _locked_reason(level: LevelResult) -> str:
    if not level.has_requirement:
        return f"No requirement configured for level {level.level}"
    unmet = sorted((c for c in level.checks if not c.passed),
                   key=lambda c: c.shortfall, reverse=True)
    if not unmet:
        return f"Level {level.level - 1} must be unlocked first"
    return "; ".join(c.describe() for c in unmet)


def evaluate_progression(levels, stats: ProgressionStats) -> ProgressionResult:
    """
    Walk ``levels`` in ascending order against ``stats``.

    Never reports level N unlocked while a lower level is locked.
    """
    results: list[LevelResult] = []
    all_lower_unlocked = True
    current_level = 0
    first_locked: LevelResult | None = None

    for spec in sorted(levels, key=lambda lv: lv.level):
        if spec.requirement is None:
            checks, passed = [], False
        else:
            checks = evaluate_requirement(spec.requirement, stats)
            passed = all(c.passed for c in checks)

        unlocked = passed and all_lower_unlocked
        if unlocked:
            status = "achieved"
            current_level = spec.level
        elif spec.requirement is not None and stats.any_progress:
            status = "in_progress"
        else:
            status = "locked"

        result = LevelResult(spec.level, spec.code, spec.label, unlocked, status,
                             spec.requirement is not None, checks)
        results.append(result)
        if not unlocked:
            all_lower_unlocked = False
            if first_locked is None:
                first_locked = result

    return ProgressionResult(
        current_level=current_level,
        levels=results,
        stats=stats,
        locked_level=first_locked.level if first_locked else None,
        reason=_locked_reason(first_locked) if first_locked else None,
    )


def level_specs_from_models(role_levels) -> list[LevelSpec]:
    specs = []
    for rl in role_levels:
        req = rl.requirement
        spec_req = None
        if req is not None:
            spec_req = RequirementSpec(
                min_workshops_total=req.min_workshops_total or 0,
                min_workshops_in_person=req.min_workshops_in_person or 0,
                min_workshops_remote=req.min_workshops_remote or 0,
                min_feedback_count=req.min_feedback_count or 0,
                min_feedback_avg=float(req.min_feedback_avg or 0),
                required_formation_types=frozenset(req.required_formation_types or ()),
            )
        specs.append(LevelSpec(rl.level, rl.code, rl.label, spec_req))
    return specs


# ═════════════════════════════════════════════════════════════════════════════
# Statistics collection
# ═════════════════════════════════════════════════════════════════════════════

def _organized_closed_workshops(user_id: str, family_id: str):
    return (
        select(Workshop.id)
        .join(WorkshopType, Workshop.type_id == WorkshopType.id)
        .where(Workshop.organizer_id == user_id,
               Workshop.family_id == family_id,
               Workshop.lifecycle_status == "closed",
               WorkshopType.is_formation.is_(False))
    )


def default_feedback_aggregate(user_id: str, family_id: str) -> FeedbackAggregate:
    """Ratings left on the organizer's closed, non-formation workshops."""
    row = db.session.execute(
        select(func.count(ParticipantFeedback.id), func.avg(ParticipantFeedback.rating))
        .join(Participation, ParticipantFeedback.participation_id == Participation.id)
        .where(Participation.workshop_id.in_(_organized_closed_workshops(user_id, family_id)))
    ).one()
    count, avg = row
    return FeedbackAggregate(count=count or 0, average=float(avg or 0.0))


def collect_organizer_stats(user_id: str, family_id: str,
                            feedback_provider: FeedbackProvider | None = None) -> ProgressionStats:
    rows = db.session.execute(
        select(Workshop.is_remote, func.count(Workshop.id))
        .join(WorkshopType, Workshop.type_id == WorkshopType.id)
        .where(Workshop.organizer_id == user_id,
               Workshop.family_id == family_id,
               Workshop.lifecycle_status == "closed",
               WorkshopType.is_formation.is_(False))
        .group_by(Workshop.is_remote)
    ).all()
    remote = sum(n for is_remote, n in rows if is_remote)
    in_person = sum(n for is_remote, n in rows if not is_remote)

    formation_codes = db.session.execute(
        select(WorkshopType.code).distinct()
        .join(Workshop, Workshop.type_id == WorkshopType.id)
        .join(Participation, Participation.workshop_id == Workshop.id)
        .where(Participation.user_id == user_id,
               Participation.attended.is_(True),
               Workshop.family_id == family_id,
               WorkshopType.is_formation.is_(True))
    ).scalars().all()

    provider = feedback_provider or default_feedback_aggregate
    feedback = provider(user_id, family_id)

    return ProgressionStats(
        workshops_total=remote + in_person,
        workshops_in_person=in_person,
        workshops_remote=remote,
        formation_codes=frozenset(formation_codes),
        feedback_count=feedback.count,
        feedback_avg=feedback.average,
    )


def get_user_progression(user_id: str, family_id: str,
                         feedback_provider: FeedbackProvider | None = None) -> ProgressionResult:
    if not db.session.get(User, user_id):
        raise NotFoundError(resource="User", resource_id=user_id)
    if not db.session.get(WorkshopFamily, family_id):
        raise NotFoundError(resource="WorkshopFamily", resource_id=family_id)

    stats = collect_organizer_stats(user_id, family_id, feedback_provider)
    role_levels = db.session.execute(
        select(RoleLevel).where(RoleLevel.family_id == family_id).order_by(RoleLevel.level)
    ).scalars().all()
    return evaluate_progression(level_specs_from_models(role_levels), stats)


def require_level(user_id: str, family_id: str, level: int,
                  feedback_provider: FeedbackProvider | None = None) -> LevelResult:
    """Return the unlocked level or raise RequirementNotMetError."""
    progression = get_user_progression(user_id, family_id, feedback_provider)
    result = progression.level(level)
    if result is None:
        raise NotFoundError(resource="RoleLevel", resource_id=level)
    if not result.unlocked:
        reason = _locked_reason(result) if progression.locked_level == level else (
            f"level {progression.locked_level} is locked: {progression.reason}"
        )
        logger.info("Level %s locked for user %s", level, user_id, extra={"user_id": user_id})
        raise RequirementNotMetError(level, reason)
    return result
