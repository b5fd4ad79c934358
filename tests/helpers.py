from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

from jose import jwt

from zest_tickets.factory import create_tickets_for_booking
from zest_tickets.models import Activity, Booking, Event, Page, User

SECRET = "test_secret"
IST = ZoneInfo("Asia/Kolkata")


def auth(user_id: str, ttl_minutes: int = 60) -> dict:
    exp = int((datetime.now(timezone.utc) + timedelta(minutes=ttl_minutes)).timestamp())
    token = jwt.encode({"sub": user_id, "exp": exp}, SECRET, algorithm="HS256")
    return {"Authorization": f"Bearer {token}"}


def today() -> str:
    return datetime.now(IST).date().isoformat()


def days_from_today(n: int) -> str:
    return (datetime.now(IST).date() + timedelta(days=n)).isoformat()


def seed_event(session, event_id="evt_1", owner="host_1", **overrides) -> Event:
    fields = dict(
        id=event_id,
        title="Sunburn Night",
        venue="Arena",
        status="published",
        architecture="legacy",
        event_date=today(),
        start_time="00:00",
        end_time="23:59",
        ticket_types=[
            {"name": "General", "price": 100.0, "capacity": 100, "available_capacity": 100},
            {"name": "VIP", "price": 100.0, "capacity": 10, "available_capacity": 10},
        ],
        sessions=[],
        creator_user_id=owner,
        authorized_staff=[],
    )
    fields.update(overrides)
    event = Event(**fields)
    session.add(event)
    session.commit()
    return event


def seed_activity(session, activity_id="act_1", owner="host_1", **overrides) -> Activity:
    weekday = datetime.now(IST).date().strftime("%A")
    fields = dict(
        id=activity_id,
        name="Pottery Class",
        location="Studio 5",
        status="published",
        price_per_slot=250.0,
        weekly_schedule=[{
            "day": weekday,
            "time_slots": [{"start_time": "00:00", "end_time": "23:59", "capacity": 5, "available_capacity": 5}],
        }],
        closed_dates=[],
        creator_user_id=owner,
        authorized_staff=[],
    )
    fields.update(overrides)
    activity = Activity(**fields)
    session.add(activity)
    session.commit()
    return activity


def seed_user(session, user_id="user_1", phone="+919999900000", **overrides) -> User:
    user = User(id=user_id, name="Asha", email="asha@example.com", phone=phone, linked_tickets=[], **overrides)
    session.add(user)
    session.commit()
    return user


def seed_page(session, page_id="page_1", owner="page_owner", kind="organization") -> Page:
    page = Page(id=page_id, kind=kind, name="Zest Org", owner_user_id=owner)
    session.add(page)
    session.commit()
    return page


def book(session, subject, tickets, total_amount, booking_id="bk_1", user_id="user_1", now=None, **overrides):
    """Write a paid booking and its tickets the way the verify flow does."""
    now = now or datetime.now(timezone.utc)
    is_event = isinstance(subject, Event)
    fields = dict(
        id=booking_id,
        type="event" if is_event else "activity",
        event_id=subject.id if is_event else None,
        activity_id=None if is_event else subject.id,
        user_id=user_id,
        name="Asha",
        email="asha@example.com",
        phone="+919999900000",
        tickets=tickets,
        total_tickets_in_booking=sum(tickets.values()) if is_event else tickets,
        total_amount=total_amount,
        selected_date=subject.event_date if is_event else today(),
        start_time=subject.start_time if is_event else "00:00",
        end_time=subject.end_time if is_event else "23:59",
        payment_id=f"pay_{booking_id}",
        order_id=f"order_{booking_id}",
        created_at=now,
        updated_at=now,
    )
    fields.update(overrides)
    booking = Booking(**fields)
    session.add(booking)
    ids = create_tickets_for_booking(session, booking, subject, now)
    session.commit()
    return booking, ids
