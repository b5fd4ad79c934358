import hmac

from fastapi import APIRouter, Depends, Header, Query

from .config import settings
from .db import SessionLocal
from .errors import AuthenticationError, NotFoundError, PermissionDeniedError, ServiceUnavailableError
from .factory import add_manual_attendees, link_tickets_by_phone
from .logging_config import get_logger
from .models import Activity, Event, Ticket, User
from .mutator import cancel_individual_tickets, transfer_ticket
from .permissions import grant_access, list_access, resolve_dashboard_permissions, revoke_access
from .schemas import (
    ActivityImport,
    CancelReq,
    EventImport,
    GrantAccessReq,
    ManualAttendeeReq,
    TransferReq,
    ticket_out,
)
from .security import current_actor
from .timeutil import iso, utcnow
from .validator import expire_tickets_for_past_events, load_subject

logger = get_logger(__name__)

router = APIRouter(prefix="/api", tags=["admin"])


def _ownership_debug(subject, user_id: str) -> dict:
    return {
        "user_id": user_id,
        "creator_page_id": subject.creator_page_id,
        "creator_user_id": subject.creator_user_id,
        "organization_id": subject.organization_id,
        "created_by": subject.created_by,
    }


# -------------------------
# Attendees
# -------------------------
@router.post("/manual-attendee")
def add_manual_attendee(req: ManualAttendeeReq, actor: str = Depends(current_actor)):
    db = SessionLocal()
    try:
        event = db.get(Event, req.event_id)
        if event is None:
            raise NotFoundError("Event not found")

        perms = resolve_dashboard_permissions(db, event, actor)
        if not perms.can_manage_attendees:
            raise PermissionDeniedError(
                "You do not have permission to add attendees to this event",
                debug={**_ownership_debug(event, actor), "role": perms.role},
            )

        result = add_manual_attendees(
            db,
            event,
            name=req.name,
            email=req.email,
            phone=req.phone,
            ticket_type=req.ticket_type,
            quantity=req.quantity,
            host_user_id=actor,
        )
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()

    return {
        "success": True,
        "attendee_ids": result.attendee_ids,
        "ticket_ids": result.ticket_ids,
        "quantity": result.quantity,
        "has_user_account": result.has_user_account,
        "total_amount": result.total_amount,
        "message": f"Added {result.quantity} attendee(s)",
    }


# -------------------------
# Tickets
# -------------------------
@router.post("/tickets/{ticket_id}/transfer")
def transfer(ticket_id: str, req: TransferReq, actor: str = Depends(current_actor)):
    db = SessionLocal()
    try:
        ticket = db.get(Ticket, ticket_id)
        if ticket is None:
            raise NotFoundError("Ticket not found")

        holder = actor in (ticket.user_id, ticket.booking.user_id if ticket.booking else None)
        if not holder:
            subject = load_subject(db, ticket)
            if subject is None or not resolve_dashboard_permissions(db, subject, actor).can_manage_attendees:
                raise PermissionDeniedError("You cannot transfer this ticket")

        ticket = transfer_ticket(
            db,
            ticket_id,
            new_name=req.new_name,
            new_email=req.new_email,
            new_phone=req.new_phone,
            transferred_by=actor,
        )
        return {"success": True, "ticket": ticket_out(ticket)}
    finally:
        db.close()


@router.post("/tickets/cancel")
def cancel_tickets(req: CancelReq, actor: str = Depends(current_actor)):
    db = SessionLocal()
    try:
        tickets = db.query(Ticket).filter(Ticket.id.in_(req.ticket_ids)).all()
        checked = set()
        for t in tickets:
            if (t.type, t.subject_id) in checked:
                continue
            subject = load_subject(db, t)
            if subject is None or not resolve_dashboard_permissions(db, subject, actor).can_manage_attendees:
                raise PermissionDeniedError("You cannot cancel tickets for this listing")
            checked.add((t.type, t.subject_id))

        result = cancel_individual_tickets(
            db,
            req.ticket_ids,
            reason=req.reason,
            cancelled_by=actor,
            refund_amount=req.refund_amount,
        )
    finally:
        db.close()

    return {
        "success": True,
        "cancelled_tickets": result.cancelled_tickets,
        "total_refund": result.total_refund,
        "refund_per_ticket": result.refund_per_ticket,
        "refund_processed": result.refund_processed,
    }


@router.post("/tickets/link-by-phone")
def link_by_phone(actor: str = Depends(current_actor)):
    db = SessionLocal()
    try:
        user = db.get(User, actor)
        if user is None:
            raise NotFoundError("User not found")
        linked = link_tickets_by_phone(db, user)
        db.commit()
    finally:
        db.close()
    logger.info("Tickets linked by phone", extra={"user_id": actor, "count": len(linked)})
    return {"success": True, "linked_ticket_ids": linked}


# -------------------------
# Imports
# -------------------------
OWNER_KEYS = ("creator_page_id", "creator_user_id", "organization_id", "created_by")


def _owner_fields(doc) -> dict:
    creator = doc.creator
    return {
        "creator_page_id": creator.page_id if creator else None,
        "creator_user_id": creator.user_id if creator else None,
        "organization_id": doc.organization_id,
        "created_by": doc.created_by,
    }


def _import(db, model, row: dict, actor: str):
    existing = db.get(model, row["id"])
    now = utcnow()
    if existing is None:
        if not any(row[k] for k in OWNER_KEYS):
            row["creator_user_id"] = actor
        obj = model(**row, updated_at=now)
        db.add(obj)
    else:
        if not resolve_dashboard_permissions(db, existing, actor).can_edit:
            raise PermissionDeniedError(
                "You cannot edit this listing",
                debug=_ownership_debug(existing, actor),
            )
        for key, value in row.items():
            if key in OWNER_KEYS and value is None:
                continue
            setattr(existing, key, value)
        existing.updated_at = now
        obj = existing
    db.commit()
    return obj


@router.post("/admin/events")
def import_event(doc: EventImport, actor: str = Depends(current_actor)):
    row = doc.model_dump(exclude={"creator", "organization_id", "created_by"})
    row.update(_owner_fields(doc))
    db = SessionLocal()
    try:
        event = _import(db, Event, row, actor)
        return {
            "success": True,
            "id": event.id,
            "title": event.title,
            "architecture": event.architecture,
            "ticket_types": event.ticket_types,
            "sessions": len(event.sessions or []),
        }
    finally:
        db.close()


@router.post("/admin/activities")
def import_activity(doc: ActivityImport, actor: str = Depends(current_actor)):
    row = doc.model_dump(exclude={"creator", "organization_id", "created_by"})
    row.update(_owner_fields(doc))
    db = SessionLocal()
    try:
        activity = _import(db, Activity, row, actor)
        return {"success": True, "id": activity.id, "name": activity.name, "weekly_schedule": activity.weekly_schedule}
    finally:
        db.close()


# -------------------------
# Maintenance
# -------------------------
@router.post("/maintenance/expire-tickets")
def run_expiry(authorization: str | None = Header(default=None)):
    expected = settings.maintenance_api_token
    if not expected:
        raise ServiceUnavailableError("Maintenance endpoint not configured")
    if not authorization or not hmac.compare_digest(authorization, f"Bearer {expected}"):
        raise AuthenticationError("Unauthorized")

    db = SessionLocal()
    try:
        result = expire_tickets_for_past_events(db)
    finally:
        db.close()
    return {
        "success": True,
        "message": "Ticket expiration job completed",
        "result": {"tickets_expired": result["updated"], "errors": result["errors"], "timestamp": iso(utcnow())},
    }


@router.get("/maintenance/expire-tickets")
def expiry_health():
    return {"status": "operational", "endpoint": "ticket-expiration-maintenance", "timestamp": iso(utcnow())}


# -------------------------
# Sharing
# -------------------------
def _assignment_out(a) -> dict:
    return {
        "id": a.id,
        "content_type": a.content_type,
        "content_id": a.content_id,
        "grantee_id": a.grantee_id,
        "role": a.role,
        "permissions": a.permissions,
        "granted_by": a.granted_by,
        "expires_at": iso(a.expires_at) if a.expires_at else None,
        "is_active": a.is_active,
    }


@router.post("/sharing")
def share(req: GrantAccessReq, actor: str = Depends(current_actor)):
    db = SessionLocal()
    try:
        assignment = grant_access(
            db,
            content_type=req.content_type,
            content_id=req.content_id,
            grantee_id=req.grantee_id,
            role=req.role,
            granted_by=actor,
            permissions=req.permissions,
            expires_in_hours=req.expires_in_hours,
        )
        return {"success": True, "assignment": _assignment_out(assignment)}
    finally:
        db.close()


@router.delete("/sharing/{assignment_id}")
def unshare(assignment_id: int, actor: str = Depends(current_actor)):
    db = SessionLocal()
    try:
        assignment = revoke_access(db, assignment_id, actor)
        return {"success": True, "assignment": _assignment_out(assignment)}
    finally:
        db.close()


@router.get("/sharing")
def shared_with(
    content_type: str = Query(...),
    content_id: str = Query(...),
    actor: str = Depends(current_actor),
):
    db = SessionLocal()
    try:
        rows = list_access(db, content_type, content_id, actor)
        return {"assignments": [_assignment_out(a) for a in rows]}
    finally:
        db.close()
