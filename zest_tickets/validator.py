"""
Scan-time ticket validation.

A ticket's stored status can lag behind reality: an ``active`` ticket whose
event is over is really expired. Validation recomputes expiry and persists
the transition before deciding, and the bulk sweep below does the same for
tickets nobody scans.
"""

from dataclasses import dataclass, field
from datetime import datetime, time, timedelta
from typing import Any, Dict, List, Optional, Tuple, Union

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .config import settings
from .logging_config import get_logger
from .models import (
    ACTIVE,
    CANCELLED,
    EVENT,
    EXPIRED,
    USED,
    Activity,
    Event,
    Ticket,
    history_entry,
)
from .timeutil import as_utc, local_datetime, parse_date, utcnow

logger = get_logger(__name__)

GRACE_PERIOD = timedelta(hours=2)
EARLY_ENTRY_WINDOW = timedelta(hours=2)
RAPID_SCAN_WINDOW = timedelta(minutes=5)


@dataclass
class ValidationResult:
    is_valid: bool
    status: str
    message: str
    code: str
    ticket: Optional[Ticket] = None
    event_details: Optional[Dict[str, Any]] = None
    security_flags: List[str] = field(default_factory=list)


def load_subject(session: Session, ticket: Ticket) -> Optional[Union[Event, Activity]]:
    if ticket.type == EVENT and ticket.event_id:
        return session.get(Event, ticket.event_id)
    if ticket.activity_id:
        return session.get(Activity, ticket.activity_id)
    return None


def subject_details(subject: Optional[Union[Event, Activity]]) -> Optional[Dict[str, Any]]:
    if subject is None:
        return None
    return {"id": subject.id, "title": subject.title, "venue": subject.venue, "status": subject.status}


def should_ticket_be_expired(
    ticket: Ticket,
    event_status: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Tuple[bool, Optional[str]]:
    """Return (should_expire, reason) for a ticket, without touching storage."""
    now = now or utcnow()
    tz = settings.tz
    local_now = now.astimezone(tz)

    day = parse_date(ticket.selected_date)
    if day is not None:
        end_of_day = datetime.combine(day, time.max, tzinfo=tz)
        if local_now > end_of_day:
            return True, "event_date_passed"

    end = local_datetime(ticket.selected_date, ticket.end_time, tz)
    if end is not None and local_now > end + GRACE_PERIOD:
        # session-centric tickets carry their session's window
        return True, "session_time_passed" if ticket.session_id else "event_time_passed"

    if event_status == CANCELLED:
        return True, "event_cancelled"

    return False, None


def validate_ticket_timing(ticket: Ticket, now: Optional[datetime] = None) -> Tuple[bool, str, str]:
    """Entry window check for an active ticket: (ok, code, message)."""
    now = now or utcnow()
    tz = settings.tz
    local_now = now.astimezone(tz)

    start = local_datetime(ticket.selected_date, ticket.start_time, tz)
    if start is not None and local_now < start - EARLY_ENTRY_WINDOW:
        return False, "TOO_EARLY", f"Entry opens 2 hours before event. Event starts at {start.strftime('%H:%M')}"

    # only reached without a start time, or when the entry window opens the day before
    day = parse_date(ticket.selected_date)
    if day is not None and day > local_now.date():
        return False, "FUTURE_DATE", f"This ticket is for {day.isoformat()}. Cannot enter before event date."

    return True, "VALID_TIMING", "Valid timing"


def perform_security_checks(ticket: Ticket, now: Optional[datetime] = None) -> List[str]:
    """Advisory flags for the scanner operator. They never deny entry."""
    now = now or utcnow()
    flags = []
    history = ticket.validation_history or []

    last_touch = next((h for h in reversed(history) if h.get("action") != "created"), None)
    if last_touch:
        try:
            touched = as_utc(datetime.fromisoformat(last_touch["timestamp"]))
        except (KeyError, ValueError):
            touched = None
        if touched is not None and now - touched < RAPID_SCAN_WINDOW:
            flags.append("RAPID_SCAN_ATTEMPT")

    if any(h.get("action") == "validated" for h in history):
        flags.append("PREVIOUS_USE_DETECTED")
    if ticket.added_manually:
        flags.append("MANUALLY_CREATED")
    if ticket.phone_for_future_link:
        flags.append("PHONE_ONLY_TICKET")
    return flags


def expire_ticket(ticket: Ticket, reason: str, location: str, now: datetime) -> None:
    ticket.status = EXPIRED
    ticket.expired_at = now
    ticket.expired_reason = reason
    ticket.updated_at = now
    ticket.validation_history = [
        *(ticket.validation_history or []),
        history_entry("expired", now, reason=reason, location=location),
    ]


def check_and_update_expiration(
    session: Session,
    ticket: Ticket,
    subject: Optional[Union[Event, Activity]],
    now: datetime,
) -> str:
    """Effective status of ``ticket``; persists active → expired when due."""
    if ticket.status != ACTIVE:
        return ticket.status

    expire, reason = should_ticket_be_expired(ticket, subject.status if subject else None, now)
    if not expire:
        return ACTIVE

    expire_ticket(ticket, reason, "system_check", now)
    try:
        session.commit()
    except SQLAlchemyError:
        # the ticket is expired either way; the sweep retries the write
        session.rollback()
        logger.exception("Failed to persist ticket expiry", extra={"ticket_id": ticket.id})
    return EXPIRED


_TERMINAL = {
    EXPIRED: ("TICKET_EXPIRED", "Ticket has expired"),
    USED: ("ALREADY_USED", "Ticket has already been used"),
    CANCELLED: ("TICKET_CANCELLED", "Ticket has been cancelled"),
}


def validate_ticket(
    session: Session,
    ticket_number: str,
    location: Optional[str] = None,
    scanner_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> ValidationResult:
    """Resolve a scanned ticket number into an entry decision."""
    now = now or utcnow()
    try:
        ticket = session.execute(
            select(Ticket).where(Ticket.ticket_number == ticket_number)
        ).scalars().first()
        if ticket is None:
            return ValidationResult(False, CANCELLED, "Invalid ticket number", "TICKET_NOT_FOUND")

        subject = load_subject(session, ticket)
        details = subject_details(subject)
        # flags describe the ticket as scanned, before any expiry entry is appended
        flags = perform_security_checks(ticket, now)
        status = check_and_update_expiration(session, ticket, subject, now)
    except SQLAlchemyError:
        logger.exception("Ticket validation failed", extra={"scanner_id": scanner_id, "location": location})
        return ValidationResult(False, CANCELLED, "System error during validation", "VALIDATION_ERROR")

    if status in _TERMINAL:
        code, message = _TERMINAL[status]
        return ValidationResult(False, status, message, code, ticket, details, flags)

    if status != ACTIVE:
        return ValidationResult(False, CANCELLED, "Unknown ticket status", "UNKNOWN_STATUS", ticket, details, flags)

    ok, code, message = validate_ticket_timing(ticket, now)
    if not ok:
        return ValidationResult(False, ACTIVE, message, code, ticket, details, flags)

    return ValidationResult(True, ACTIVE, "Valid ticket - ready for entry", "VALID_ACTIVE", ticket, details, flags)


def expire_tickets_for_past_events(session: Session, now: Optional[datetime] = None) -> Dict[str, int]:
    """Maintenance sweep: expire every active ticket whose time is up."""
    now = now or utcnow()
    updated = 0
    errors = 0

    try:
        tickets = session.execute(select(Ticket).where(Ticket.status == ACTIVE)).scalars().all()
        event_status = dict(session.execute(select(Event.id, Event.status)).all())
        activity_status = dict(session.execute(select(Activity.id, Activity.status)).all())
    except SQLAlchemyError:
        logger.exception("Bulk expiration query failed")
        return {"updated": 0, "errors": 1}

    pending = 0
    for ticket in tickets:
        statuses = event_status if ticket.type == EVENT else activity_status
        expire, reason = should_ticket_be_expired(ticket, statuses.get(ticket.subject_id), now)
        if not expire:
            continue
        expire_ticket(ticket, reason, "batch_expiration", now)
        pending += 1
        if pending >= settings.write_batch_size:
            updated, errors = _flush_chunk(session, pending, updated, errors)
            pending = 0

    if pending:
        updated, errors = _flush_chunk(session, pending, updated, errors)

    logger.info("Bulk expiration completed", extra={"updated": updated, "errors": errors})
    return {"updated": updated, "errors": errors}


def _flush_chunk(session: Session, pending: int, updated: int, errors: int) -> Tuple[int, int]:
    try:
        session.commit()
        return updated + pending, errors
    except SQLAlchemyError:
        session.rollback()
        logger.exception("Bulk expiration chunk failed", extra={"tickets": pending})
        return updated, errors + pending


_DISPLAY = {
    ACTIVE: ("Active", "#10b981", True),
    USED: ("Used", "#6b7280", False),
    EXPIRED: ("Expired", "#ef4444", False),
    CANCELLED: ("Cancelled", "#f59e0b", False),
}


def get_ticket_display_status(ticket: Ticket, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Effective status for listings; never writes."""
    status = ticket.status
    if status == ACTIVE and should_ticket_be_expired(ticket, now=now)[0]:
        status = EXPIRED

    if status not in _DISPLAY:
        return {"status": CANCELLED, "display_text": "Unknown", "color": "#6b7280", "can_use": False}
    text, color, can_use = _DISPLAY[status]
    return {"status": status, "display_text": text, "color": color, "can_use": can_use}
