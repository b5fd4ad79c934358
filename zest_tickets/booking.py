"""
Booking validation and atomic booking creation.

Everything the client sends about money and capacity is recomputed here from
the stored event or activity; the client's total only has to agree with the
server's to within a paisa.
"""

import re
import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple, Union

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .config import settings
from .errors import ConflictError, NotFoundError, ValidationError
from .factory import check_unit_count, create_tickets_for_booking
from .logging_config import get_logger
from .models import ACTIVITY, CANCELLED, EVENT, Activity, Booking, Event
from .schemas import BookingData
from .timeutil import parse_date, utcnow

logger = get_logger(__name__)

AMOUNT_TOLERANCE = 0.01
DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


@dataclass
class BookingQuote:
    amount: float
    breakdown: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class BookingOutcome:
    booking_id: str
    ticket_ids: List[str]
    amount: float
    breakdown: List[Dict[str, Any]]

    @property
    def group_booking_info(self) -> Dict[str, Any]:
        return {
            "total_tickets": len(self.ticket_ids),
            "is_group_booking": len(self.ticket_ids) > 1,
            "can_check_in_independently": True,
        }


def validate_booking_structure(data: BookingData, booking_type: str) -> None:
    required = {
        "user_id": data.user_id,
        "name": data.name,
        "email": data.email,
        "selected_date": data.selected_date,
        "selected_time_slot": data.selected_time_slot,
        "tickets": data.tickets,
        "total_amount": data.total_amount,
    }
    for name, value in required.items():
        if not value:
            raise ValidationError(f"Missing required field: {name}")

    if booking_type == EVENT:
        if not data.event_id:
            raise ValidationError("Event ID is required for event booking")
        if not isinstance(data.tickets, dict) or not data.tickets:
            raise ValidationError("Invalid ticket selection for event booking")
        if any(qty < 0 for qty in data.tickets.values()):
            raise ValidationError("Ticket quantities cannot be negative")
    elif booking_type == ACTIVITY:
        if not data.activity_id:
            raise ValidationError("Activity ID is required for activity booking")
        if not isinstance(data.tickets, int) or data.tickets <= 0:
            raise ValidationError("Invalid ticket quantity for activity booking")
    else:
        raise ValidationError("Invalid booking type")

    if data.total_amount <= 0:
        raise ValidationError("Invalid total amount")
    if not DATE_RE.match(data.selected_date) or parse_date(data.selected_date) is None:
        raise ValidationError("Invalid date format. Expected YYYY-MM-DD")
    slot = data.selected_time_slot
    if not slot.start_time or not slot.end_time:
        raise ValidationError("Invalid time slot data")


def check_booking_rate(session: Session, user_id: str, now: datetime) -> None:
    recent = session.execute(
        select(func.count(Booking.id)).where(
            Booking.user_id == user_id,
            Booking.added_manually.is_(False),
            Booking.created_at > now - timedelta(hours=1),
        )
    ).scalar_one()
    if recent >= settings.bookings_per_user_per_hour:
        raise ValidationError(
            "Too many bookings in the last hour. Please try again later.",
            details={"recent_booking_count": recent},
        )


def load_bookable(session: Session, data: BookingData, booking_type: str) -> Union[Event, Activity]:
    if booking_type == EVENT:
        subject = session.get(Event, data.event_id)
        label = "Event"
    else:
        subject = session.get(Activity, data.activity_id)
        label = "Activity"
    if subject is None:
        raise ValidationError(f"{label} not found")
    return subject


def verify_booking_eligibility(subject: Union[Event, Activity], data: BookingData, now: datetime) -> None:
    day = parse_date(data.selected_date)
    if day < now.astimezone(settings.tz).date():
        raise ValidationError("Cannot book past events" if isinstance(subject, Event) else "Cannot book past activities")
    if subject.status == CANCELLED:
        raise ValidationError(f"{'Event' if isinstance(subject, Event) else 'Activity'} has been cancelled")
    if isinstance(subject, Activity) and data.selected_date in (subject.closed_dates or []):
        raise ValidationError("Activity is not available on selected date")


def event_ticket_catalogue(event: Event, data: BookingData) -> Tuple[List[dict], Optional[dict]]:
    """Ticket types that apply to this booking, plus the chosen session if any."""
    if not event.is_session_centric:
        return event.ticket_types or [], None

    session_id = data.session_id
    if not session_id:
        raise ValidationError("Session ID is required for session-centric events")
    target = event.find_session(session_id)
    if target is None:
        raise ValidationError(f"Session {session_id} not found in event")
    return target.get("tickets") or [], target


def calculate_event_amount(event: Event, data: BookingData) -> BookingQuote:
    catalogue, target = event_ticket_catalogue(event, data)
    if not catalogue:
        raise ValidationError("No tickets found for this event")

    by_name = {t["name"]: t for t in catalogue}
    quote = BookingQuote(amount=0)
    for name, qty in data.tickets.items():
        if name not in by_name:
            raise ValidationError(
                f"Invalid ticket type: {name}. Available tickets: {', '.join(by_name)}"
            )
        price = float(by_name[name].get("price", 0))
        subtotal = price * qty
        quote.amount += subtotal
        quote.breakdown.append({
            "ticket_type": name,
            "quantity": qty,
            "price": price,
            "subtotal": subtotal,
            "session_id": target["id"] if target else None,
        })
    return quote


def calculate_activity_amount(activity: Activity, data: BookingData) -> BookingQuote:
    price = float(activity.price_per_slot or 0)
    amount = price * data.tickets
    return BookingQuote(
        amount=amount,
        breakdown=[{"ticket_type": "Activity Spot", "quantity": data.tickets, "price": price, "subtotal": amount}],
    )


def validate_complete_booking(
    session: Session,
    data: BookingData,
    booking_type: str,
    now: Optional[datetime] = None,
) -> BookingQuote:
    """
    Structure, per-user rate, eligibility and amount checks, in that order.

    Raises an AppError on the first failure; returns the server-side quote.
    """
    now = now or utcnow()
    validate_booking_structure(data, booking_type)
    check_booking_rate(session, data.user_id, now)

    subject = load_bookable(session, data, booking_type)
    verify_booking_eligibility(subject, data, now)

    if booking_type == EVENT:
        quote = calculate_event_amount(subject, data)
    else:
        quote = calculate_activity_amount(subject, data)

    if abs(quote.amount - data.total_amount) > AMOUNT_TOLERANCE:
        raise ValidationError(
            "Amount mismatch between client and server calculation",
            details={"client_amount": data.total_amount, "server_amount": quote.amount, "breakdown": quote.breakdown},
        )
    return quote


def _new_booking_id() -> str:
    return f"booking_{int(time.time() * 1000)}_{secrets.token_hex(5)}"


def _decrement(catalogue: List[dict], wanted: Dict[str, int]) -> List[dict]:
    updated = []
    for t in catalogue:
        qty = int(wanted.get(t["name"], 0))
        remaining = int(t.get("available_capacity", 0)) - qty
        if remaining < 0:
            raise ConflictError(
                f"Insufficient capacity for ticket type: {t['name']}. "
                f"Available: {t.get('available_capacity', 0)}, Requested: {qty}"
            )
        updated.append({**t, "available_capacity": remaining})
    return updated


def _base_booking(data: BookingData, booking_type: str, payment_id: str, order_id: str, now: datetime) -> Booking:
    return Booking(
        id=_new_booking_id(),
        type=booking_type,
        user_id=data.user_id,
        name=data.name.strip(),
        email=data.email.lower().strip(),
        phone=data.phone,
        tickets=data.tickets,
        total_amount=float(data.total_amount),
        selected_date=data.selected_date,
        start_time=data.selected_time_slot.start_time,
        end_time=data.selected_time_slot.end_time,
        payment_id=payment_id,
        order_id=order_id,
        payment_status="completed",
        status="confirmed",
        can_check_in_independently=True,
        created_at=now,
        updated_at=now,
    )


def _commit_booking(session: Session, booking: Booking) -> None:
    try:
        session.commit()
    except IntegrityError as exc:
        session.rollback()
        logger.warning("Booking commit rejected", extra={"payment_id": booking.payment_id})
        raise ConflictError("Payment already processed") from exc


def create_event_booking(
    session: Session,
    data: BookingData,
    *,
    payment_id: str,
    order_id: str,
    quote: BookingQuote,
    now: Optional[datetime] = None,
) -> BookingOutcome:
    """Decrement capacity, write the booking and its tickets in one commit."""
    now = now or utcnow()
    event = session.get(Event, data.event_id, with_for_update=True)
    if event is None:
        raise NotFoundError("Event not found")

    total = sum(int(q) for q in data.tickets.values())
    check_unit_count(total)

    catalogue, target = event_ticket_catalogue(event, data)
    updated = _decrement(catalogue, data.tickets)
    if target is not None:
        event.sessions = [{**s, "tickets": updated} if s.get("id") == target["id"] else s for s in event.sessions]
    else:
        event.ticket_types = updated
    event.updated_at = now

    booking = _base_booking(data, EVENT, payment_id, order_id, now)
    booking.event_id = event.id
    booking.total_tickets_in_booking = total
    booking.individual_amount = booking.total_amount / total
    if target is not None:
        booking.session_id = target["id"]
        booking.selected_date = target.get("date") or booking.selected_date
        booking.start_time = target.get("start_time") or booking.start_time
        booking.end_time = target.get("end_time") or booking.end_time
    session.add(booking)

    ticket_ids = create_tickets_for_booking(session, booking, event, now)
    _commit_booking(session, booking)

    logger.info("Event booking created", extra={"booking_id": booking.id, "event_id": event.id, "tickets": total})
    return BookingOutcome(booking.id, ticket_ids, quote.amount, quote.breakdown)


def create_activity_booking(
    session: Session,
    data: BookingData,
    *,
    payment_id: str,
    order_id: str,
    quote: BookingQuote,
    now: Optional[datetime] = None,
) -> BookingOutcome:
    """Take the spots out of the weekday slot and write booking plus tickets."""
    now = now or utcnow()
    activity = session.get(Activity, data.activity_id, with_for_update=True)
    if activity is None:
        raise NotFoundError("Activity not found")

    requested = int(data.tickets)
    check_unit_count(requested)

    weekday = parse_date(data.selected_date).strftime("%A")
    slot_req = data.selected_time_slot
    matched = False
    schedule = []
    for day in activity.weekly_schedule or []:
        if day.get("day") != weekday:
            schedule.append(day)
            continue
        slots = []
        for slot in day.get("time_slots", []):
            if slot["start_time"] == slot_req.start_time and slot["end_time"] == slot_req.end_time:
                remaining = int(slot.get("available_capacity", 0)) - requested
                if remaining < 0:
                    raise ConflictError(
                        f"Insufficient capacity for time slot {slot['start_time']}-{slot['end_time']}. "
                        f"Available: {slot.get('available_capacity', 0)}, Requested: {requested}"
                    )
                slot = {**slot, "available_capacity": remaining}
                matched = True
            slots.append(slot)
        schedule.append({**day, "time_slots": slots})

    if not matched:
        raise ValidationError(f"No {slot_req.start_time}-{slot_req.end_time} slot on {weekday}")
    activity.weekly_schedule = schedule
    activity.updated_at = now

    booking = _base_booking(data, ACTIVITY, payment_id, order_id, now)
    booking.activity_id = activity.id
    booking.total_tickets_in_booking = requested
    booking.individual_amount = booking.total_amount / requested
    session.add(booking)

    ticket_ids = create_tickets_for_booking(session, booking, activity, now)
    _commit_booking(session, booking)

    logger.info(
        "Activity booking created",
        extra={"booking_id": booking.id, "activity_id": activity.id, "tickets": requested},
    )
    return BookingOutcome(booking.id, ticket_ids, quote.amount, quote.breakdown)
