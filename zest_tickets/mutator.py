"""
Ticket state transitions: check-in, transfer and partial cancellation.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from .errors import ConflictError, NotFoundError, ValidationError
from .logging_config import get_logger
from .models import ACTIVE, CANCELLED, USED, Booking, Ticket, history_entry
from .timeutil import utcnow

logger = get_logger(__name__)


@dataclass
class CancellationResult:
    cancelled_tickets: List[str] = field(default_factory=list)
    total_refund: float = 0
    refund_per_ticket: float = 0
    # TODO: issue the refund through Razorpay's POST /v1/payments/{id}/refund
    refund_processed: bool = False


def mark_ticket_as_used(
    session: Session,
    ticket_number: str,
    scanner_id: str,
    location: Optional[str] = None,
    now: Optional[datetime] = None,
) -> bool:
    """
    Flip an active ticket to used.

    The status predicate in the UPDATE is the lock: of two concurrent scans
    only one matches a row, the other sees rowcount 0 and gets False.
    """
    now = now or utcnow()
    ticket = session.execute(
        select(Ticket).where(Ticket.ticket_number == ticket_number)
    ).scalars().first()
    if ticket is None or ticket.status != ACTIVE:
        return False

    entry = history_entry("validated", now, location=location or "main_entrance", actor=scanner_id)
    result = session.execute(
        update(Ticket)
        .where(Ticket.id == ticket.id, Ticket.status == ACTIVE)
        .values(
            status=USED,
            used_at=now,
            used_by=scanner_id,
            use_location=location or "main_entrance",
            updated_at=now,
            validation_history=[*(ticket.validation_history or []), entry],
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        session.rollback()
        logger.info("Lost check-in race", extra={"ticket_id": ticket.id, "scanner_id": scanner_id})
        return False

    session.execute(
        update(Booking)
        .where(Booking.id == ticket.booking_id)
        .values(checked_in=True, check_in_time=now, checked_in_by=scanner_id, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    session.commit()
    session.expire(ticket)

    logger.info("Ticket checked in", extra={"ticket_id": ticket.id, "scanner_id": scanner_id, "location": location})
    return True


def transfer_ticket(
    session: Session,
    ticket_id: str,
    *,
    new_name: str,
    new_email: str,
    new_phone: Optional[str] = None,
    transferred_by: str,
    now: Optional[datetime] = None,
) -> Ticket:
    """Hand one ticket of a group booking to another person."""
    now = now or utcnow()
    ticket = session.get(Ticket, ticket_id)
    if ticket is None:
        raise NotFoundError("Ticket not found")
    if ticket.status != ACTIVE:
        raise ConflictError(f"Only active tickets can be transferred (ticket is {ticket.status})")

    booking = ticket.booking
    if booking is None:
        raise NotFoundError("Booking not found for ticket")
    if not booking.can_check_in_independently or booking.total_tickets_in_booking <= 1:
        raise ValidationError("Only tickets from group bookings can be transferred")

    new_email = new_email.lower().strip()
    previous = {"name": ticket.user_name, "email": ticket.user_email, "phone": ticket.user_phone}
    incoming = {"name": new_name.strip(), "email": new_email, "phone": new_phone}

    ticket.user_name = incoming["name"]
    ticket.user_email = new_email
    ticket.user_phone = new_phone
    ticket.user_id = None
    ticket.updated_at = now
    ticket.validation_history = [
        *(ticket.validation_history or []),
        history_entry("transferred", now, actor=transferred_by, **{"from": previous, "to": incoming}),
    ]

    record = {"timestamp": now.isoformat(), "ticket_id": ticket.id, "from": previous, "to": incoming,
              "transferred_by": transferred_by}
    booking.transfer_history = [*(booking.transfer_history or []), record]
    if len(booking.issued_tickets) == 1:
        booking.name = incoming["name"]
        booking.email = new_email
        booking.phone = new_phone
        booking.user_id = None
    booking.updated_at = now

    session.commit()
    logger.info("Ticket transferred", extra={"ticket_id": ticket.id, "transferred_by": transferred_by})
    return ticket


def cancel_individual_tickets(
    session: Session,
    ticket_ids: List[str],
    *,
    reason: str,
    cancelled_by: str,
    refund_amount: Optional[float] = None,
    now: Optional[datetime] = None,
) -> CancellationResult:
    """
    Cancel a subset of tickets and pro-rate the refund across them.

    The request is all-or-nothing: one missing, used or already cancelled
    ticket rejects it before anything is written.
    """
    now = now or utcnow()
    if not ticket_ids:
        raise ValidationError("No tickets to cancel")

    ticket_ids = list(dict.fromkeys(ticket_ids))
    tickets = session.execute(select(Ticket).where(Ticket.id.in_(ticket_ids))).scalars().all()
    found = {t.id: t for t in tickets}

    missing = [tid for tid in ticket_ids if tid not in found]
    if missing:
        raise NotFoundError("Some tickets were not found", details={"missing": missing})
    used = [t.id for t in tickets if t.status == USED]
    if used:
        raise ConflictError("Cannot cancel tickets that have been used", details={"used": used})
    cancelled = [t.id for t in tickets if t.status == CANCELLED]
    if cancelled:
        raise ConflictError("Some tickets are already cancelled", details={"cancelled": cancelled})

    total_refund = refund_amount if refund_amount is not None else sum(t.amount or 0 for t in tickets)
    per_ticket = total_refund / len(tickets)

    for t in tickets:
        t.status = CANCELLED
        t.is_valid = False
        t.updated_at = now
        t.cancellation_info = {
            "cancelled_at": now.isoformat(),
            "cancelled_by": cancelled_by,
            "reason": reason,
            "refund_amount": per_ticket,
        }
        t.validation_history = [
            *(t.validation_history or []),
            history_entry("cancelled", now, actor=cancelled_by, reason=reason),
        ]

    # Flush so the booking roll-up below sees the new statuses
    session.flush()
    for booking_id in {t.booking_id for t in tickets}:
        booking = session.get(Booking, booking_id)
        if booking is None:
            continue
        statuses = [t.status for t in booking.issued_tickets]
        booking.status = "cancelled" if all(s == CANCELLED for s in statuses) else "partially_cancelled"
        booking.cancellation_info = {
            "cancelled_at": now.isoformat(),
            "cancelled_by": cancelled_by,
            "reason": reason,
            "cancelled_tickets": [t.id for t in tickets if t.booking_id == booking_id],
        }
        booking.updated_at = now

    session.commit()
    logger.info(
        "Tickets cancelled",
        extra={"count": len(tickets), "cancelled_by": cancelled_by, "total_refund": total_refund},
    )
    return CancellationResult(
        cancelled_tickets=[t.id for t in tickets],
        total_refund=total_refund,
        refund_per_ticket=per_ticket,
    )
