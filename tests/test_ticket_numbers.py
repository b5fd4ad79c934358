import re

from zest_tickets import ticket_numbers
from zest_tickets.models import Ticket
from zest_tickets.ticket_numbers import (
    generate_qr_code_data,
    generate_ticket_number,
    generate_unique_ticket_number,
    is_ticket_number_unique,
)
from tests.helpers import book, seed_event

TICKET_RE = re.compile(r"^ZST-[A-Z0-9]+-[A-F0-9]+-[A-F0-9]+$")


def test_ticket_number_format():
    number = generate_ticket_number()
    assert TICKET_RE.match(number), number
    _, _, random_part, checksum = number.split("-")
    assert len(random_part) == 16
    assert len(checksum) == 4


def test_ten_thousand_numbers_do_not_collide():
    numbers = {generate_ticket_number() for _ in range(10_000)}
    assert len(numbers) == 10_000


def test_qr_payload_is_the_number():
    assert generate_qr_code_data("ticket_x", "ZST-ABC-0011-FF") == "ZST-ABC-0011-FF"


def test_uniqueness_check_sees_stored_numbers(session):
    event = seed_event(session)
    _, ids = book(session, event, {"General": 1}, 100.0)
    stored = session.get(Ticket, ids[0]).ticket_number
    assert is_ticket_number_unique(session, stored) is False
    assert is_ticket_number_unique(session, generate_ticket_number()) is True


def test_falls_back_to_wider_number_after_retries(session, monkeypatch):
    monkeypatch.setattr(ticket_numbers, "is_ticket_number_unique", lambda s, n: False)
    number = generate_unique_ticket_number(session)
    assert TICKET_RE.match(number)
    assert len(number.split("-")[2]) == 24


def test_reserved_numbers_are_skipped(session, monkeypatch):
    drawn = iter(["ZST-A-0000000000000001-0001", "ZST-A-0000000000000002-0002"])
    monkeypatch.setattr(ticket_numbers, "generate_ticket_number", lambda: next(drawn))
    number = generate_unique_ticket_number(session, reserved={"ZST-A-0000000000000001-0001"})
    assert number == "ZST-A-0000000000000002-0002"
