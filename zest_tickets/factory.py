"""
Ticket factory.

Expands a confirmed booking (or a host's manual entry) into one ticket row
per admitted person. Functions here only add rows to the caller's session;
the caller commits once so a booking's tickets land together or not at all.
"""

import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Tuple, Union

from sqlalchemy import select
from sqlalchemy.orm import Session

from .config import settings
from .errors import ValidationError
from .logging_config import get_logger
from .models import (
    ACTIVE,
    ACTIVITY,
    EVENT,
    Activity,
    Booking,
    Event,
    Ticket,
    User,
    history_entry,
)
from .ticket_numbers import generate_qr_code_data, generate_unique_ticket_number
from .timeutil import utcnow

logger = get_logger(__name__)


@dataclass
class ManualEntryResult:
    attendee_ids: List[str] = field(default_factory=list)
    ticket_ids: List[str] = field(default_factory=list)
    quantity: int = 0
    has_user_account: bool = False
    total_amount: float = 0


def ticket_units(booking: Booking) -> List[Tuple[Optional[str], int]]:
    """(ticket_type, quantity) pairs a booking expands into."""
    if booking.type == EVENT:
        if not isinstance(booking.tickets, dict):
            raise ValidationError("Event bookings need a ticket-type to quantity map")
        return [(name, int(qty)) for name, qty in booking.tickets.items() if int(qty) > 0]
    return [(None, int(booking.tickets))]


def check_unit_count(total: int) -> None:
    if total < 1:
        raise ValidationError("A booking needs at least one ticket")
    if total > settings.max_tickets_per_booking:
        raise ValidationError(
            f"Group bookings are limited to {settings.max_tickets_per_booking} tickets"
        )


def create_tickets_for_booking(
    session: Session,
    booking: Booking,
    subject: Union[Event, Activity],
    now: Optional[datetime] = None,
) -> List[str]:
    """Create one active ticket per unit of ``booking`` and return their ids."""
    now = now or utcnow()
    units = ticket_units(booking)
    total = sum(qty for _, qty in units)
    check_unit_count(total)

    share = booking.total_amount / total
    reserved: set = set()
    tickets = []

    for ticket_type, qty in units:
        for i in range(qty):
            number = generate_unique_ticket_number(session, reserved)
            reserved.add(number)
            if booking.type == EVENT:
                ticket_id = f"ticket_{booking.id}_{ticket_type}_{i + 1}"
            else:
                ticket_id = f"ticket_{booking.id}_{i + 1}"

            tickets.append(Ticket(
                id=ticket_id,
                ticket_number=number,
                qr_code=generate_qr_code_data(ticket_id, number),
                user_id=booking.user_id,
                user_name=booking.name,
                user_email=booking.email,
                user_phone=booking.phone,
                type=booking.type,
                event_id=booking.event_id,
                activity_id=booking.activity_id,
                title=subject.title or ("Event" if booking.type == EVENT else "Activity"),
                venue=subject.venue or ("Venue TBD" if booking.type == EVENT else "Location TBD"),
                session_id=booking.session_id,
                booking_id=booking.id,
                selected_date=booking.selected_date,
                start_time=booking.start_time,
                end_time=booking.end_time,
                ticket_type=ticket_type,
                amount=share,
                payment_id=booking.payment_id,
                payment_status=booking.payment_status,
                status=ACTIVE,
                is_valid=True,
                validation_history=[history_entry("created", now)],
                created_at=now,
                updated_at=now,
            ))

    session.add_all(tickets)
    ticket_ids = [t.id for t in tickets]
    link_tickets_to_user(session, booking.user_id, ticket_ids, now)

    logger.info(
        "Tickets created for booking",
        extra={"booking_id": booking.id, "booking_type": booking.type, "count": len(ticket_ids)},
    )
    return ticket_ids


def link_tickets_to_user(session: Session, user_id: Optional[str], ticket_ids: List[str], now: datetime) -> bool:
    if not user_id or not ticket_ids:
        return False
    user = session.get(User, user_id)
    if user is None:
        return False
    user.linked_tickets = [*(user.linked_tickets or []), *ticket_ids]
    user.updated_at = now
    return True


def find_user_by_phone(session: Session, phone: str) -> Optional[User]:
    return session.execute(select(User).where(User.phone == phone).limit(1)).scalars().first()


def find_ticket_type(types: list, name: str) -> Optional[dict]:
    for t in types or []:
        if t.get("name") == name:
            return t
    return None


def add_manual_attendees(
    session: Session,
    event: Event,
    *,
    name: str,
    email: str,
    phone: str,
    ticket_type: str,
    quantity: int,
    host_user_id: str,
    now: Optional[datetime] = None,
) -> ManualEntryResult:
    """
    Host-side entry without payment: one attendee row and one ticket per unit.

    Capacity comes out of the ticket type's available count, and tickets are
    linked to an existing account with the same phone, or parked on the
    phone number until that person signs up.
    """
    now = now or utcnow()
    if quantity < 1 or quantity > settings.max_tickets_per_booking:
        raise ValidationError(f"Quantity must be between 1 and {settings.max_tickets_per_booking}")

    info = find_ticket_type(event.ticket_types, ticket_type)
    if info is None:
        raise ValidationError(f'Ticket type "{ticket_type}" not found for this event')

    available = int(info.get("available_capacity", info.get("capacity", 0)))
    if quantity > available:
        raise ValidationError(f"Not enough capacity for {quantity} tickets. Available: {available}")

    name = name.strip()
    email = email.lower().strip()
    phone = phone.strip()
    price = float(info.get("price", 0))

    user = find_user_by_phone(session, phone)
    user_id = user.id if user else None
    parked_phone = None if user else phone

    base_id = f"manual_{int(time.time() * 1000)}_{secrets.token_hex(5)}"
    selected_date = event.event_date or now.astimezone(settings.tz).date().isoformat()
    start_time = event.start_time or "00:00"
    end_time = event.end_time or "23:59"

    result = ManualEntryResult(quantity=quantity, has_user_account=user is not None)
    reserved: set = set()

    for i in range(1, quantity + 1):
        attendee_id = f"{base_id}_attendee_{i}"
        ticket_id = f"{base_id}_ticket_{i}"
        number = generate_unique_ticket_number(session, reserved)
        reserved.add(number)

        session.add(Booking(
            id=attendee_id,
            type=EVENT,
            event_id=event.id,
            booking_reference=base_id,
            user_id=user_id,
            name=name,
            email=email,
            phone=phone,
            tickets={ticket_type: 1},
            ticket_type=ticket_type,
            ticket_index=i,
            total_tickets_in_booking=quantity,
            individual_amount=price,
            total_amount=price,
            selected_date=selected_date,
            start_time=start_time,
            end_time=end_time,
            payment_status="manual_entry",
            status="confirmed",
            can_check_in_independently=True,
            added_manually=True,
            added_by=host_user_id,
            phone_for_future_link=parked_phone,
            created_at=now,
            updated_at=now,
        ))
        session.add(Ticket(
            id=ticket_id,
            ticket_number=number,
            qr_code=generate_qr_code_data(ticket_id, number),
            user_id=user_id,
            user_name=name,
            user_email=email,
            user_phone=phone,
            type=EVENT,
            event_id=event.id,
            title=event.title or "Event",
            venue=event.venue or "Venue TBD",
            booking_id=attendee_id,
            selected_date=selected_date,
            start_time=start_time,
            end_time=end_time,
            ticket_type=ticket_type,
            amount=price,
            payment_id=f"manual_{base_id}",
            payment_status="manual_entry",
            status=ACTIVE,
            is_valid=True,
            added_manually=True,
            added_by=host_user_id,
            phone_for_future_link=parked_phone,
            validation_history=[
                history_entry("created", now, location="manual_entry", actor=host_user_id)
            ],
            created_at=now,
            updated_at=now,
        ))
        result.attendee_ids.append(attendee_id)
        result.ticket_ids.append(ticket_id)

    event.ticket_types = [
        {**t, "available_capacity": available - quantity} if t.get("name") == ticket_type else t
        for t in event.ticket_types
    ]
    event.updated_at = now
    link_tickets_to_user(session, user_id, result.ticket_ids, now)

    result.total_amount = price * quantity
    logger.info(
        "Manual attendees staged",
        extra={"event_id": event.id, "quantity": quantity, "has_user_account": result.has_user_account},
    )
    return result


def link_tickets_by_phone(session: Session, user: User, now: Optional[datetime] = None) -> List[str]:
    """Claim tickets that were parked on ``user.phone`` before the account existed."""
    now = now or utcnow()
    if not user.phone:
        return []

    tickets = session.execute(
        select(Ticket).where(Ticket.user_id.is_(None), Ticket.phone_for_future_link == user.phone)
    ).scalars().all()
    for t in tickets:
        t.user_id = user.id
        t.phone_for_future_link = None
        t.validation_history = [*(t.validation_history or []), history_entry("linked", now, actor=user.id)]
        t.updated_at = now

    bookings = session.execute(
        select(Booking).where(Booking.user_id.is_(None), Booking.phone_for_future_link == user.phone)
    ).scalars().all()
    for b in bookings:
        b.user_id = user.id
        b.phone_for_future_link = None
        b.updated_at = now

    claimed = [t.id for t in tickets]
    link_tickets_to_user(session, user.id, claimed, now)
    return claimed
