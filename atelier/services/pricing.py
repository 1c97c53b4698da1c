"""
Pricing Table — classification tag → seat price (EUR) and ticket offer.

Formation workshop types are always free. An unknown or missing
classification falls back to ``FALLBACK_PRICE``.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from decimal import Decimal

from atelier.services.classification import FORMATION_STATUS

logger = logging.getLogger(__name__)


FALLBACK_PRICE = Decimal("12")

PRICE_TABLE: dict[str, Decimal] = {
    "benevole_grand_public": Decimal("12"),
    "interne_asso": Decimal("8"),
    "externe_asso": Decimal("8"),
    "interne_entreprise": Decimal("12"),
    "externe_entreprise": Decimal("12"),
    "interne_profs": Decimal("8"),
    "externe_profs": Decimal("8"),
    "interne_etudiants_alumnis": Decimal("0"),
    "externe_etudiants_alumnis": Decimal("4"),
    "interne_elus": Decimal("8"),
    "externe_elus": Decimal("8"),
    "interne_agents": Decimal("8"),
    "externe_agents": Decimal("8"),
    FORMATION_STATUS: Decimal("0"),
}


@dataclass(frozen=True)
class PriceInfo:
    label: str
    description: str
    price: Decimal


@dataclass(frozen=True)
class TicketTypeInfo:
    type: str
    label: str
    description: str
    price: Decimal
    available: bool = True

    def to_dict(self) -> dict:
        d = asdict(self)
        d["price"] = float(self.price)
        return d


def get_base_price(classification_status: str | None) -> Decimal:
    price = PRICE_TABLE.get(classification_status or "")
    if price is None:
        logger.debug("No price for classification %r, using fallback", classification_status)
        return FALLBACK_PRICE
    return price


def get_workshop_price(is_formation: bool, classification_status: str | None) -> PriceInfo:
    if is_formation:
        return PriceInfo("Gratuit", "Inscription gratuite pour les formations", Decimal("0"))

    price = get_base_price(classification_status)
    if price == 0:
        return PriceInfo("Gratuit", "Accès gratuit", Decimal("0"))
    return PriceInfo("Tarif", "Tarif basé sur la classification", price)


def get_ticket_types(is_formation: bool, classification_status: str | None) -> list[TicketTypeInfo]:
    """Ticket offer for a workshop: one ticket, ``gratuit`` when free, else ``normal``."""
    info = get_workshop_price(is_formation, classification_status)
    return [TicketTypeInfo(
        type="gratuit" if info.price == 0 else "normal",
        label=info.label,
        description=info.description,
        price=info.price,
    )]


def price_for_ticket(is_formation: bool, classification_status: str | None,
                     ticket_type: str | None = None) -> tuple[str, Decimal]:
    """Return ``(ticket_type, price)`` for a requested ticket.

    ``None`` selects the default offer. A ticket type outside the offer
    raises ValueError.
    """
    offer = get_ticket_types(is_formation, classification_status)
    if ticket_type is None:
        chosen = offer[0]
    else:
        chosen = next((t for t in offer if t.type == ticket_type and t.available), None)
        if chosen is None:
            raise ValueError(
                f"Ticket type '{ticket_type}' not offered; available: "
                + ", ".join(t.type for t in offer)
            )
    return chosen.type, chosen.price
