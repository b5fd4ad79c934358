import uuid

from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from redis.asyncio import Redis
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from .admin import router as admin_router
from .config import settings
from .db import Base, SessionLocal, engine
from .errors import (
    AppError,
    PermissionDeniedError,
    RateLimitedError,
    app_error_handler,
    request_validation_handler,
)
from .idempotency import get_cached_response, set_cached_response
from .logging_config import get_logger
from .models import ACTIVE, EntryLog, Ticket
from .mutator import mark_ticket_as_used
from .payments import router as payments_router
from .permissions import can_scan_ticket
from .rate_limit import per_minute
from .schemas import VerifyEntryReq, ticket_out
from .security import current_actor
from .timeutil import utcnow
from .validator import get_ticket_display_status, load_subject, validate_ticket

logger = get_logger(__name__)

MAX_TICKETS_LISTED = 100

app = FastAPI(title="Zest Tickets", version="1.0.0")
app.state.redis = Redis.from_url(settings.redis_url, decode_responses=False)

app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(RequestValidationError, request_validation_handler)
app.include_router(payments_router)
app.include_router(admin_router)

Base.metadata.create_all(bind=engine)

HTTP_STATUS = {
    "VALID_ACTIVE": 200,
    "TICKET_NOT_FOUND": 404,
    "ALREADY_USED": 409,
    "TICKET_EXPIRED": 410,
    "TICKET_CANCELLED": 403,
    "WRONG_EVENT": 403,
    "UNAUTHORIZED": 403,
    "FUTURE_DATE": 400,
    "TOO_EARLY": 400,
    "UNKNOWN_STATUS": 400,
    "RATE_LIMITED": 429,
    "VALIDATION_ERROR": 500,
}


def client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.post("/api/tickets/verify-entry")
async def verify_entry(
    req: VerifyEntryReq,
    request: Request,
    scanner_id: str = Depends(current_actor),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    redis = request.app.state.redis
    decision_id = str(uuid.uuid4())
    ip = client_ip(request)
    ua = request.headers.get("user-agent", "")

    if idempotency_key:
        cached = await get_cached_response(redis, idempotency_key)
        if cached:
            return JSONResponse(status_code=cached["http_status"], content=cached["body"])

    async def decide(code: str, message: str, result=None, ticket=None):
        body = {
            "decision_id": decision_id,
            "status": "ACCEPTED" if code == "VALID_ACTIVE" else "REJECTED",
            "reason_code": code,
            "message": message,
            "ticket": ticket_out(ticket) if ticket is not None else None,
            "event": result.event_details if result else None,
            "security_flags": result.security_flags if result else [],
        }
        status = HTTP_STATUS[code]
        if idempotency_key:
            await set_cached_response(redis, idempotency_key, {"http_status": status, "body": body})
        _audit(decision_id, ip, ua, req, scanner_id, ticket, body["status"], code, body["security_flags"])
        return JSONResponse(status_code=status, content=body)

    if not await per_minute(redis, f"scan:{ip}", settings.scan_rate_limit_per_min):
        return await decide("RATE_LIMITED", "Too many scan attempts. Please slow down.")

    db = SessionLocal()
    try:
        # scope checks run before validation, which may persist an expiry
        ticket = db.execute(
            select(Ticket).where(Ticket.ticket_number == req.ticket_number)
        ).scalars().first()
        if ticket is not None:
            if req.event_id and ticket.subject_id != req.event_id:
                return await decide("WRONG_EVENT", "Ticket belongs to a different event", ticket=ticket)

            subject = load_subject(db, ticket)
            if subject is None or not can_scan_ticket(db, ticket, subject, scanner_id):
                return await decide("UNAUTHORIZED", "You are not authorized to check in tickets here", ticket=ticket)

        result = validate_ticket(db, req.ticket_number, location=req.location, scanner_id=scanner_id)
        ticket = result.ticket
        if ticket is None:
            return await decide(result.code, result.message, result)

        if not result.is_valid:
            return await decide(result.code, result.message, result, ticket)

        if not mark_ticket_as_used(db, req.ticket_number, scanner_id, req.location):
            return await decide("ALREADY_USED", "Ticket has already been used", result, ticket)

        db.refresh(ticket)
        return await decide("VALID_ACTIVE", "Entry granted", result, ticket)
    finally:
        db.close()


def _audit(decision_id, ip, ua, req, scanner_id, ticket, status, reason, flags):
    db = SessionLocal()
    try:
        db.add(EntryLog(
            decision_id=decision_id,
            ip=ip,
            user_agent=ua,
            event_id=ticket.subject_id if ticket is not None else req.event_id,
            ticket_id=ticket.id if ticket is not None else None,
            ticket_number=req.ticket_number,
            scanner_id=scanner_id,
            location=req.location,
            status=status,
            reason_code=reason,
            security_flags=list(flags),
        ))
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        # the decision stands even when the audit row is lost
        logger.exception("Failed to write entry log", extra={"decision_id": decision_id, "reason_code": reason})
    finally:
        db.close()


@app.get("/api/tickets")
async def list_user_tickets(
    request: Request,
    user_id: str = Query(...),
    actor: str = Depends(current_actor),
):
    if not await per_minute(request.app.state.redis, f"tickets:{client_ip(request)}", settings.tickets_rate_limit_per_min):
        raise RateLimitedError("Too many requests. Please try again later.")
    if actor != user_id:
        raise PermissionDeniedError("You can only view your own tickets")

    now = utcnow()
    db = SessionLocal()
    try:
        tickets = db.execute(
            select(Ticket)
            .where(Ticket.user_id == user_id)
            .order_by(Ticket.created_at.desc())
            .limit(MAX_TICKETS_LISTED)
        ).scalars().all()
        out = [ticket_out(t, get_ticket_display_status(t, now)) for t in tickets]
    finally:
        db.close()

    return {
        "tickets": out,
        "count": len(out),
        "active": sum(1 for t in out if t["display"]["status"] == ACTIVE),
    }
