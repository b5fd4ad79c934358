"""
Razorpay order creation and payment verification.

Verification is the only path that creates paid bookings. A Redis lock keyed
on the payment id keeps two concurrent verifications of the same payment
apart, and the unique ``bookings.payment_id`` column rejects any that slip
past the lock.
"""

import asyncio
import hashlib
import hmac
import secrets
import time
from typing import Any, Dict, Optional

import httpx
from fastapi import APIRouter, Depends, Request
from sqlalchemy import select

from .booking import create_activity_booking, create_event_booking, validate_complete_booking
from .config import settings
from .db import SessionLocal
from .errors import ConflictError, PaymentGatewayError, ServiceUnavailableError, ValidationError
from .idempotency import acquire_lock, release_lock
from .logging_config import get_logger
from .models import ACTIVITY, EVENT, Booking
from .schemas import CreateOrderReq, VerifyPaymentReq

logger = get_logger(__name__)

router = APIRouter(prefix="/api/payment", tags=["payments"])

MAX_ORDER_AMOUNT = 1_000_000
PAYMENT_LOCK_TTL_SECONDS = 60


class RazorpayClient:
    """Minimal Orders API client with retries on 5xx and timeouts."""

    def __init__(
        self,
        key_id: str,
        key_secret: str,
        base_url: str = "https://api.razorpay.com",
        attempts: int = 3,
        backoff_seconds: float = 0.5,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.key_id = key_id
        self.key_secret = key_secret
        self.base_url = base_url
        self.attempts = attempts
        self.backoff_seconds = backoff_seconds
        self.transport = transport

    async def create_order(self, amount_paise: int, currency: str, receipt: str, notes: dict) -> Dict[str, Any]:
        payload = {"amount": amount_paise, "currency": currency, "receipt": receipt, "notes": notes}
        last_error = None

        async with httpx.AsyncClient(
            base_url=self.base_url,
            auth=(self.key_id, self.key_secret),
            timeout=10.0,
            transport=self.transport,
        ) as client:
            for attempt in range(1, self.attempts + 1):
                try:
                    r = await client.post("/v1/orders", json=payload)
                except httpx.TransportError as e:
                    last_error = repr(e)
                else:
                    if r.status_code < 500:
                        if r.is_error:
                            logger.warning(
                                "Razorpay rejected order",
                                extra={"status_code": r.status_code, "receipt": receipt},
                            )
                            raise PaymentGatewayError("Failed to create payment order")
                        return r.json()
                    last_error = f"HTTP {r.status_code}"

                logger.warning(
                    "Razorpay order attempt failed",
                    extra={"attempt": attempt, "error": last_error, "receipt": receipt},
                )
                if attempt < self.attempts:
                    await asyncio.sleep(self.backoff_seconds * attempt)

        raise PaymentGatewayError("Failed to create payment order", debug={"last_error": last_error})


def get_razorpay_client() -> RazorpayClient:
    if not settings.razorpay_key_id or not settings.razorpay_key_secret:
        raise ServiceUnavailableError("Payment service not configured")
    return RazorpayClient(settings.razorpay_key_id, settings.razorpay_key_secret, settings.razorpay_base_url)


def generate_receipt() -> str:
    return f"ZST_{int(time.time() * 1000)}_{secrets.token_hex(4)}"


def verify_payment_signature(order_id: str, payment_id: str, signature: str, secret: str) -> bool:
    expected = hmac.new(secret.encode(), f"{order_id}|{payment_id}".encode(), hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature)


@router.post("/create-order")
async def create_order(req: CreateOrderReq, client: RazorpayClient = Depends(get_razorpay_client)):
    amount = req.amount
    if isinstance(amount, bool) or not isinstance(amount, (int, float)) or not 0 < amount <= MAX_ORDER_AMOUNT:
        raise ValidationError("Invalid amount. Must be a positive number up to 10,00,000")
    if req.currency != "INR":
        raise ValidationError("Only INR currency is supported")
    if req.notes is not None and not isinstance(req.notes, dict):
        raise ValidationError("Notes must be an object")

    receipt = req.receipt or generate_receipt()
    order = await client.create_order(round(amount * 100), req.currency, receipt, req.notes or {})

    logger.info("Payment order created", extra={"order_id": order.get("id"), "receipt": receipt})
    return {
        "success": True,
        "order": {
            "id": order.get("id"),
            "amount": order.get("amount"),
            "currency": order.get("currency"),
            "receipt": order.get("receipt"),
        },
    }


@router.post("/verify")
async def verify_payment(req: VerifyPaymentReq, request: Request):
    if not settings.razorpay_key_secret:
        raise ServiceUnavailableError("Payment service not configured")
    if req.booking_type not in (EVENT, ACTIVITY):
        raise ValidationError("Invalid booking type")

    if not verify_payment_signature(
        req.razorpay_order_id, req.razorpay_payment_id, req.razorpay_signature, settings.razorpay_key_secret
    ):
        logger.warning(
            "Payment signature mismatch",
            extra={"order_id": req.razorpay_order_id, "payment_id": req.razorpay_payment_id},
        )
        raise ValidationError("Payment verification failed")

    redis = request.app.state.redis
    lock_key = f"payment:lock:{req.razorpay_payment_id}"
    if not await acquire_lock(redis, lock_key, PAYMENT_LOCK_TTL_SECONDS):
        raise ConflictError("Payment is already being processed")

    db = SessionLocal()
    try:
        seen = db.execute(
            select(Booking.id).where(Booking.payment_id == req.razorpay_payment_id).limit(1)
        ).first()
        if seen:
            logger.warning(
                "Duplicate payment verification",
                extra={
                    "payment_id": req.razorpay_payment_id,
                    "ip": request.client.host if request.client else "unknown",
                },
            )
            raise ConflictError("Payment already processed")

        data = req.booking_data
        quote = validate_complete_booking(db, data, req.booking_type)
        create = create_event_booking if req.booking_type == EVENT else create_activity_booking
        outcome = create(
            db,
            data,
            payment_id=req.razorpay_payment_id,
            order_id=req.razorpay_order_id,
            quote=quote,
        )
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
        await release_lock(redis, lock_key)

    return {
        "success": True,
        "booking_id": outcome.booking_id,
        "ticket_ids": outcome.ticket_ids,
        "amount": outcome.amount,
        "breakdown": outcome.breakdown,
        "group_booking_info": outcome.group_booking_info,
    }
