"""
Calendar export — one workshop as an iCalendar (RFC 5545) VEVENT.

SEQUENCE follows the workshop's confirmation versions so calendar clients
replace the event after each date or location change.
"""

from flask import current_app

from atelier.utils.helpers import as_utc, utcnow

DEFAULT_PRODID = "-//Atelier Platform//Workshops//FR"


def format_ics_date(value) -> str:
    return as_utc(value).strftime("%Y%m%dT%H%M%SZ")


def escape_ics_text(text: str) -> str:
    return (
        text.replace("\\", "\\\\")
        .replace(";", "\\;")
        .replace(",", "\\,")
        .replace("\r\n", "\\n")
        .replace("\n", "\\n")
    )


def format_location(workshop) -> str:
    if workshop.is_remote:
        return "Online"
    loc = workshop.location or {}
    parts = [loc.get("venue_name"), loc.get("street"), loc.get("city"), loc.get("postal_code")]
    return escape_ics_text(", ".join(p for p in parts if p))


def generate_ics(workshop, *, now=None) -> str:
    cfg = current_app.config
    domain = cfg.get("CALENDAR_UID_DOMAIN", "atelier.local")
    prodid = cfg.get("CALENDAR_PRODID", DEFAULT_PRODID)

    description = escape_ics_text(workshop.description or "")
    if workshop.is_remote and workshop.visio_link:
        description += f"\\n\\nLien visio: {workshop.visio_link}"
    if workshop.mural_link:
        description += f"\\n\\nLien Mural: {workshop.mural_link}"
    location = format_location(workshop)
    sequence = (workshop.date_confirmation_version - 1) + (workshop.location_confirmation_version - 1)
    status = "CANCELLED" if workshop.lifecycle_status == "canceled" else "CONFIRMED"

    lines = [
        "BEGIN:VCALENDAR",
        "VERSION:2.0",
        f"PRODID:{prodid}",
        "CALSCALE:GREGORIAN",
        "METHOD:PUBLISH",
        "BEGIN:VEVENT",
        f"UID:{workshop.id}@{domain}",
        f"DTSTAMP:{format_ics_date(now or utcnow())}",
        f"DTSTART:{format_ics_date(workshop.start_at)}",
        f"DTEND:{format_ics_date(workshop.end_at)}",
        f"SUMMARY:{escape_ics_text(workshop.title)}",
    ]
    if description:
        lines.append(f"DESCRIPTION:{description}")
    if location:
        lines.append(f"LOCATION:{location}")
    lines += [
        f"STATUS:{status}",
        f"SEQUENCE:{sequence}",
        "END:VEVENT",
        "END:VCALENDAR",
    ]
    return "\r\n".join(lines) + "\r\n"
