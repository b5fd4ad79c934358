"""
Dashboard roles and content sharing.

A user's role on an event or activity is the first match of: legacy owner
fields, creator user, owner of the creator page, the best active shared
assignment on the content or its page, then authorized staff.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional, Union

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from .errors import NotFoundError, PermissionDeniedError, ValidationError
from .logging_config import get_logger
from .models import Activity, ContentAssignment, Event, Page, Ticket
from .timeutil import as_utc, utcnow

logger = get_logger(__name__)

ROLE_RANK = {"checkin": 0, "viewer": 1, "editor": 2, "admin": 3, "owner": 4}
CONTENT_TYPES = ("page", "event", "activity", "session")
CHECK_IN = "check_in"


@dataclass
class DashboardPermissions:
    role: str
    can_view: bool = False
    can_edit: bool = False
    can_delete: bool = False
    can_manage_attendees: bool = False
    can_view_financials: bool = False
    can_check_in: bool = False

    @property
    def can_share(self) -> bool:
        return self.role in ("owner", "admin")


def permissions_for_role(role: str) -> DashboardPermissions:
    if role == "owner":
        return DashboardPermissions("owner", True, True, True, True, True, True)
    if role == "admin":
        return DashboardPermissions("admin", True, True, True, True, True, True)
    if role == "editor":
        return DashboardPermissions("editor", True, True, False, True, True, True)
    if role == "viewer":
        return DashboardPermissions("viewer", can_view=True)
    if role == "checkin":
        return DashboardPermissions("checkin", can_view=True, can_check_in=True)
    return DashboardPermissions("unauthorized")


def _is_expired(assignment: ContentAssignment, now: datetime) -> bool:
    return assignment.expires_at is not None and as_utc(assignment.expires_at) < now


def active_assignments(
    session: Session,
    targets: List[tuple],
    user_id: str,
    now: datetime,
) -> List[ContentAssignment]:
    """Active assignments for ``user_id`` on any (content_type, content_id) in targets.

    Expired rows found on the way are deactivated and committed.
    """
    if not targets:
        return []
    clauses = [
        (ContentAssignment.content_type == ctype) & (ContentAssignment.content_id == cid)
        for ctype, cid in targets
    ]
    rows = session.execute(
        select(ContentAssignment).where(
            ContentAssignment.grantee_id == user_id,
            ContentAssignment.is_active.is_(True),
            or_(*clauses),
        )
    ).scalars().all()

    live = []
    expired = 0
    for a in rows:
        if _is_expired(a, now):
            a.is_active = False
            a.deactivated_at = now
            expired += 1
            continue
        live.append(a)
    if expired:
        session.commit()
        logger.info("Deactivated expired assignments", extra={"user_id": user_id, "count": expired})
    return live


def resolve_dashboard_permissions(
    session: Session,
    subject: Union[Event, Activity],
    user_id: Optional[str],
    now: Optional[datetime] = None,
) -> DashboardPermissions:
    now = now or utcnow()
    if not user_id:
        return permissions_for_role("unauthorized")

    if user_id in (subject.organization_id, subject.created_by):
        return permissions_for_role("owner")
    if subject.creator_user_id == user_id:
        return permissions_for_role("owner")

    page = session.get(Page, subject.creator_page_id) if subject.creator_page_id else None
    if page is not None and page.owner_user_id == user_id:
        return permissions_for_role("owner")

    kind = "event" if isinstance(subject, Event) else "activity"
    targets = [(kind, subject.id)]
    if subject.creator_page_id:
        targets.append(("page", subject.creator_page_id))
    shared = active_assignments(session, targets, user_id, now)
    if shared:
        best = max(shared, key=lambda a: ROLE_RANK.get(a.role, -1))
        return permissions_for_role(best.role)

    if user_id in (subject.authorized_staff or []):
        return permissions_for_role("checkin")

    return permissions_for_role("unauthorized")


def session_content_id(event_id: str, session_id: str) -> str:
    return f"{event_id}:{session_id}"


def can_scan_ticket(
    session: Session,
    ticket: Ticket,
    subject: Union[Event, Activity],
    scanner_id: str,
    now: Optional[datetime] = None,
) -> bool:
    now = now or utcnow()
    if resolve_dashboard_permissions(session, subject, scanner_id, now).can_check_in:
        return True
    if not ticket.session_id or not ticket.event_id:
        return False

    delegated = active_assignments(
        session, [("session", session_content_id(ticket.event_id, ticket.session_id))], scanner_id, now
    )
    return any(CHECK_IN in (a.permissions or []) for a in delegated)


def content_role(session: Session, content_type: str, content_id: str, user_id: str, now: datetime) -> str:
    """Role of ``user_id`` on any shareable content."""
    if content_type == "page":
        page = session.get(Page, content_id)
        if page is None:
            raise NotFoundError("Page not found")
        if page.owner_user_id == user_id:
            return "owner"
        shared = active_assignments(session, [("page", content_id)], user_id, now)
        if not shared:
            return "unauthorized"
        return max(shared, key=lambda a: ROLE_RANK.get(a.role, -1)).role

    if content_type == "session":
        event_id, _, session_id = content_id.partition(":")
        event = session.get(Event, event_id)
        if event is None or event.find_session(session_id) is None:
            raise NotFoundError("Session not found")
        return resolve_dashboard_permissions(session, event, user_id, now).role

    model = Event if content_type == "event" else Activity
    subject = session.get(model, content_id)
    if subject is None:
        raise NotFoundError(f"{content_type.capitalize()} not found")
    return resolve_dashboard_permissions(session, subject, user_id, now).role


def grant_access(
    session: Session,
    *,
    content_type: str,
    content_id: str,
    grantee_id: str,
    role: str,
    granted_by: str,
    permissions: Optional[List[str]] = None,
    expires_in_hours: Optional[float] = None,
    now: Optional[datetime] = None,
) -> ContentAssignment:
    """Create or reactivate the (content, grantee) assignment."""
    now = now or utcnow()
    if content_type not in CONTENT_TYPES:
        raise ValidationError(f"Unsupported content type: {content_type}")
    if role not in ROLE_RANK:
        raise ValidationError(f"Unknown role: {role}")
    if grantee_id == granted_by:
        raise ValidationError("Cannot share content with yourself")

    grantor_role = content_role(session, content_type, content_id, granted_by, now)
    if not permissions_for_role(grantor_role).can_share:
        raise PermissionDeniedError(
            "Only owners and admins can share this content",
            debug={"grantor_role": grantor_role, "content_type": content_type, "content_id": content_id},
        )
    if role in ("owner", "admin") and grantor_role != "owner":
        raise PermissionDeniedError("Only owners can grant owner or admin access")

    perms = list(permissions or [])
    if content_type == "session" and CHECK_IN not in perms:
        perms.append(CHECK_IN)
    expires_at = now + timedelta(hours=expires_in_hours) if expires_in_hours else None

    assignment = session.execute(
        select(ContentAssignment).where(
            ContentAssignment.content_type == content_type,
            ContentAssignment.content_id == content_id,
            ContentAssignment.grantee_id == grantee_id,
        )
    ).scalars().first()
    if assignment is None:
        assignment = ContentAssignment(
            content_type=content_type,
            content_id=content_id,
            grantee_id=grantee_id,
            created_at=now,
        )
        session.add(assignment)

    assignment.role = role
    assignment.permissions = perms
    assignment.granted_by = granted_by
    assignment.expires_at = expires_at
    assignment.is_active = True
    assignment.deactivated_at = None
    session.commit()

    logger.info(
        "Access granted",
        extra={"content_type": content_type, "content_id": content_id, "grantee_id": grantee_id, "role": role},
    )
    return assignment


def revoke_access(
    session: Session,
    assignment_id: int,
    revoked_by: str,
    now: Optional[datetime] = None,
) -> ContentAssignment:
    now = now or utcnow()
    assignment = session.get(ContentAssignment, assignment_id)
    if assignment is None or not assignment.is_active:
        raise NotFoundError("Assignment not found")

    if content_role(session, assignment.content_type, assignment.content_id, revoked_by, now) not in (
        "owner",
        "admin",
    ):
        raise PermissionDeniedError("Only owners and admins can remove access")

    assignment.is_active = False
    assignment.deactivated_at = now
    session.commit()
    logger.info("Access revoked", extra={"assignment_id": assignment_id, "revoked_by": revoked_by})
    return assignment


def list_access(
    session: Session,
    content_type: str,
    content_id: str,
    user_id: str,
    now: Optional[datetime] = None,
) -> List[ContentAssignment]:
    now = now or utcnow()
    if content_role(session, content_type, content_id, user_id, now) == "unauthorized":
        raise PermissionDeniedError("No access to this content")

    rows = session.execute(
        select(ContentAssignment)
        .where(
            ContentAssignment.content_type == content_type,
            ContentAssignment.content_id == content_id,
            ContentAssignment.is_active.is_(True),
        )
        .order_by(ContentAssignment.id)
    ).scalars().all()
    live = []
    for a in rows:
        if _is_expired(a, now):
            a.is_active = False
            a.deactivated_at = now
        else:
            live.append(a)
    session.commit()
    return live
