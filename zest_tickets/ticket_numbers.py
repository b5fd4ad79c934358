"""
Ticket number and QR payload generation.

Numbers look like ``ZST-<base36 ms timestamp>-<16 hex>-<4 hex>``. The QR
payload is the bare number; nothing is signed, so forgery resistance comes
from the 80 random bits and server-side lookup at scan time.
"""

import secrets
import time
from typing import Collection

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .logging_config import get_logger
from .models import Ticket

logger = get_logger(__name__)

MAX_ATTEMPTS = 5
_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def _base36(n: int) -> str:
    if n == 0:
        return "0"
    out = []
    while n:
        n, r = divmod(n, 36)
        out.append(_BASE36[r])
    return "".join(reversed(out))


def _timestamp() -> str:
    return _base36(int(time.time() * 1000))


def generate_ticket_number() -> str:
    random_part = secrets.token_hex(8)
    checksum = secrets.token_hex(2)
    return f"ZST-{_timestamp()}-{random_part}-{checksum}".upper()


def generate_qr_code_data(ticket_id: str, ticket_number: str) -> str:
    return ticket_number


def is_ticket_number_unique(session: Session, ticket_number: str) -> bool:
    try:
        existing = session.execute(
            select(Ticket.id).where(Ticket.ticket_number == ticket_number).limit(1)
        ).first()
    except SQLAlchemyError:
        # Treat as taken so the caller draws another number
        logger.exception("Ticket number uniqueness check failed")
        return False
    return existing is None


def generate_unique_ticket_number(session: Session, reserved: Collection[str] = ()) -> str:
    """
    Draw numbers until one is free, up to MAX_ATTEMPTS.

    ``reserved`` holds numbers already handed out in the current unit of work
    that are not flushed yet. After the retries run out a wider number is
    returned unchecked; the unique index on tickets is the last line.
    """
    for _ in range(MAX_ATTEMPTS):
        candidate = generate_ticket_number()
        if candidate in reserved:
            continue
        if is_ticket_number_unique(session, candidate):
            return candidate

    logger.warning("Ticket number retries exhausted, using high-entropy fallback")
    random_part = secrets.token_hex(12)
    extra = secrets.token_hex(4)
    return f"ZST-{_timestamp()}-{random_part}-{extra}".upper()
