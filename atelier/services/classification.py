"""
Classification Resolver — audience questionnaire → classification tag.

The organizer answers up to four questions:

    audience → organization → sub_audience → situation

``grand_public`` resolves immediately. ``pro`` walks the remaining steps;
``enseignement`` and ``pouvoir_public`` need a ``sub_audience``. Partial
answers never fall back to a default: they resolve to ``None``.

Formation workshop types skip the questionnaire entirely and are tagged
``formation``.

Usage:
    from atelier.services.classification import ClassificationChoice, resolve_classification

    choice = ClassificationChoice(audience="pro", organization="association", situation="internal")
    resolve_classification(choice)   # -> "interne_asso"
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass

from atelier.core.exceptions import IncompleteClassificationError, ValidationError

logger = logging.getLogger(__name__)


FORMATION_STATUS = "formation"

STEPS = ("audience", "organization", "sub_audience", "situation")

# Allowed answers per step.
AUDIENCES = ("grand_public", "pro")
ORGANIZATIONS = ("association", "entreprise", "enseignement", "pouvoir_public")
SITUATIONS = ("internal", "external")
SUB_AUDIENCES = {
    "enseignement": ("profs", "etudiants_alumnis"),
    "pouvoir_public": ("elus", "agents"),
}

# Tag suffix per (organization, sub_audience); sub_audience is None when the
# organization has no sub-step.
_SUFFIX = {
    ("association", None): "asso",
    ("entreprise", None): "entreprise",
    ("enseignement", "profs"): "profs",
    ("enseignement", "etudiants_alumnis"): "etudiants_alumnis",
    ("pouvoir_public", "elus"): "elus",
    ("pouvoir_public", "agents"): "agents",
}
_SITUATION_PREFIX = {"internal": "interne", "external": "externe"}

CLASSIFICATION_LABELS = {
    "benevole_grand_public": "Grand Public - Bénévole",
    "interne_asso": "Association - Interne",
    "externe_asso": "Association - Prestataire externe",
    "interne_entreprise": "Entreprise - Interne",
    "externe_entreprise": "Entreprise - Prestataire externe",
    "interne_profs": "Enseignement - Professeurs - Interne",
    "externe_profs": "Enseignement - Professeurs - Prestataire externe",
    "interne_etudiants_alumnis": "Enseignement - Étudiants/Alumnis - Interne",
    "externe_etudiants_alumnis": "Enseignement - Étudiants/Alumnis - Prestataire externe",
    "interne_elus": "Pouvoir Public - Élus - Interne",
    "externe_elus": "Pouvoir Public - Élus - Prestataire externe",
    "interne_agents": "Pouvoir Public - Agents - Interne",
    "externe_agents": "Pouvoir Public - Agents - Prestataire externe",
    FORMATION_STATUS: "Formation",
}

CLASSIFICATION_STATUSES = frozenset(CLASSIFICATION_LABELS)


@dataclass(frozen=True)
class ClassificationChoice:
    """The questionnaire path answered so far."""

    audience: str | None = None
    organization: str | None = None
    sub_audience: str | None = None
    situation: str | None = None

    @classmethod
    def from_dict(cls, data: dict | None) -> "ClassificationChoice":
        data = data or {}
        return cls(
            audience=data.get("audience") or None,
            organization=data.get("organization") or None,
            sub_audience=data.get("sub_audience") or data.get("subAudience") or None,
            situation=data.get("situation") or None,
        )

    def to_dict(self) -> dict:
        return asdict(self)


def validate_choice(choice: ClassificationChoice) -> None:
    """Reject answers outside the allowed vocabulary of each step.

    Missing answers are fine (the path is simply incomplete).
    """
    errors = {}
    if choice.audience is not None and choice.audience not in AUDIENCES:
        errors["audience"] = f"must be one of {', '.join(AUDIENCES)}"
    if choice.organization is not None and choice.organization not in ORGANIZATIONS:
        errors["organization"] = f"must be one of {', '.join(ORGANIZATIONS)}"
    if choice.situation is not None and choice.situation not in SITUATIONS:
        errors["situation"] = f"must be one of {', '.join(SITUATIONS)}"
    if choice.sub_audience is not None:
        allowed = SUB_AUDIENCES.get(choice.organization, ())
        if choice.sub_audience not in allowed:
            errors["sub_audience"] = (
                f"must be one of {', '.join(allowed)}" if allowed
                else f"not applicable to organization '{choice.organization}'"
            )
    if errors:
        raise ValidationError("Invalid classification answers", details=errors)


def next_missing_step(choice: ClassificationChoice) -> str | None:
    """Name of the next unanswered step, or None when the path is complete."""
    if choice.audience is None:
        return "audience"
    if choice.audience == "grand_public":
        return None
    if choice.organization is None:
        return "organization"
    if choice.organization in SUB_AUDIENCES and choice.sub_audience is None:
        return "sub_audience"
    if choice.situation is None:
        return "situation"
    return None


def is_classification_complete(choice: ClassificationChoice) -> bool:
    return next_missing_step(choice) is None


def resolve_classification(choice: ClassificationChoice, *, is_formation: bool = False) -> str | None:
    """Resolve a questionnaire path to its classification tag.

    Returns None for an incomplete or unknown path.
    """
    if is_formation:
        return FORMATION_STATUS
    if choice.audience == "grand_public":
        return "benevole_grand_public"
    if choice.audience != "pro" or next_missing_step(choice) is not None:
        return None

    sub = choice.sub_audience if choice.organization in SUB_AUDIENCES else None
    suffix = _SUFFIX.get((choice.organization, sub))
    prefix = _SITUATION_PREFIX.get(choice.situation)
    if not suffix or not prefix:
        return None
    return f"{prefix}_{suffix}"


def resolve_or_raise(choice: ClassificationChoice, *, is_formation: bool = False,
                     workshop_id: str | None = None) -> str:
    """Like ``resolve_classification`` but raises when the path is incomplete."""
    status = resolve_classification(choice, is_formation=is_formation)
    if status is None:
        missing = next_missing_step(choice)
        logger.debug("Classification incomplete (missing=%s) for workshop %s", missing, workshop_id)
        raise IncompleteClassificationError(missing, workshop_id=workshop_id)
    return status


def get_classification_label(status: str | None) -> str | None:
    if status is None:
        return None
    return CLASSIFICATION_LABELS.get(status, status)
