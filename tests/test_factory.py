from datetime import datetime, timezone

import pytest

from zest_tickets.errors import ValidationError
from zest_tickets.factory import add_manual_attendees, create_tickets_for_booking, link_tickets_by_phone
from zest_tickets.models import Booking, Event, Ticket, User
from tests.helpers import book, seed_activity, seed_event, seed_user


def test_group_event_booking_expands_per_ticket_type(session):
    event = seed_event(session)
    seed_user(session)
    booking, ids = book(session, event, {"General": 3, "VIP": 1}, 400.0)

    assert ids == [
        "ticket_bk_1_General_1",
        "ticket_bk_1_General_2",
        "ticket_bk_1_General_3",
        "ticket_bk_1_VIP_1",
    ]
    tickets = session.query(Ticket).filter(Ticket.booking_id == booking.id).all()
    assert len(tickets) == 4
    assert all(t.amount == pytest.approx(100.0) for t in tickets)
    assert all(t.status == "active" and t.is_valid for t in tickets)
    assert all(t.qr_code == t.ticket_number for t in tickets)
    assert all(t.validation_history[0]["action"] == "created" for t in tickets)
    assert len({t.ticket_number for t in tickets}) == 4

    bookings = session.query(Booking).all()
    assert len(bookings) == 1
    assert bookings[0].tickets == {"General": 3, "VIP": 1}

    user = session.get(User, "user_1")
    assert user.linked_tickets == ids


def test_activity_booking_uses_plain_indices(session):
    activity = seed_activity(session)
    _, ids = book(session, activity, 2, 500.0)
    assert ids == ["ticket_bk_1_1", "ticket_bk_1_2"]
    t = session.get(Ticket, ids[0])
    assert t.title == "Pottery Class"
    assert t.venue == "Studio 5"
    assert t.amount == pytest.approx(250.0)


def test_unknown_user_is_not_linked(session):
    event = seed_event(session)
    _, ids = book(session, event, {"General": 1}, 100.0, user_id="ghost")
    assert session.get(Ticket, ids[0]).user_id == "ghost"
    assert session.get(User, "ghost") is None


def test_oversized_booking_is_rejected_before_writing(session):
    event = seed_event(session)
    now = datetime.now(timezone.utc)
    booking = Booking(
        id="bk_big", type="event", event_id=event.id, name="A", email="a@example.com",
        tickets={"General": 51}, total_amount=5100.0, created_at=now, updated_at=now,
    )
    session.add(booking)
    with pytest.raises(ValidationError):
        create_tickets_for_booking(session, booking, event, now)
    session.rollback()
    assert session.query(Ticket).count() == 0


def test_manual_attendees_without_account_are_parked_on_phone(session):
    event = seed_event(session)
    result = add_manual_attendees(
        session, event,
        name=" Ravi ", email="RAVI@Example.com", phone="+918888800000",
        ticket_type="VIP", quantity=2, host_user_id="host_1",
    )
    session.commit()

    assert result.quantity == 2
    assert result.has_user_account is False
    assert result.total_amount == pytest.approx(200.0)
    assert len(result.attendee_ids) == len(result.ticket_ids) == 2

    for tid in result.ticket_ids:
        t = session.get(Ticket, tid)
        assert t.user_id is None
        assert t.phone_for_future_link == "+918888800000"
        assert t.added_manually and t.payment_status == "manual_entry"
        assert t.user_email == "ravi@example.com"

    refreshed = session.get(Event, event.id)
    vip = next(t for t in refreshed.ticket_types if t["name"] == "VIP")
    assert vip["available_capacity"] == 8


def test_manual_attendees_link_existing_account(session):
    event = seed_event(session)
    seed_user(session, user_id="user_9", phone="+917777700000")
    result = add_manual_attendees(
        session, event,
        name="Meera", email="meera@example.com", phone="+917777700000",
        ticket_type="General", quantity=1, host_user_id="host_1",
    )
    session.commit()
    assert result.has_user_account is True
    assert session.get(User, "user_9").linked_tickets == result.ticket_ids


@pytest.mark.parametrize("ticket_type,quantity", [("Backstage", 1), ("VIP", 11), ("General", 0)])
def test_manual_attendees_rejections(session, ticket_type, quantity):
    event = seed_event(session)
    with pytest.raises(ValidationError):
        add_manual_attendees(
            session, event,
            name="X", email="x@example.com", phone="+911",
            ticket_type=ticket_type, quantity=quantity, host_user_id="host_1",
        )


def test_link_by_phone_claims_parked_tickets(session):
    event = seed_event(session)
    result = add_manual_attendees(
        session, event,
        name="Ravi", email="ravi@example.com", phone="+918888800000",
        ticket_type="General", quantity=2, host_user_id="host_1",
    )
    session.commit()
    user = seed_user(session, user_id="ravi", phone="+918888800000")

    claimed = link_tickets_by_phone(session, user)
    session.commit()

    assert sorted(claimed) == sorted(result.ticket_ids)
    for tid in claimed:
        t = session.get(Ticket, tid)
        assert t.user_id == "ravi"
        assert t.phone_for_future_link is None
        assert t.validation_history[-1]["action"] == "linked"
    assert sorted(session.get(User, "ravi").linked_tickets) == sorted(claimed)
