from datetime import datetime
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .db import Base

# Ticket states. Only ACTIVE has outgoing transitions.
ACTIVE = "active"
USED = "used"
CANCELLED = "cancelled"
EXPIRED = "expired"

EVENT = "event"
ACTIVITY = "activity"


class Page(Base):
    """Organizer page: artist, organization or venue."""

    __tablename__ = "pages"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    kind: Mapped[str] = mapped_column(String)
    name: Mapped[str] = mapped_column(String)
    owner_user_id: Mapped[str] = mapped_column(String, index=True)


class User(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    email: Mapped[Optional[str]] = mapped_column(String, nullable=True, index=True)
    phone: Mapped[Optional[str]] = mapped_column(String, nullable=True, index=True)
    linked_tickets: Mapped[list] = mapped_column(JSON, default=list)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class Event(Base):
    __tablename__ = "events"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    title: Mapped[str] = mapped_column(String, index=True)
    venue: Mapped[str] = mapped_column(String, default="Venue TBD")
    status: Mapped[str] = mapped_column(String, default="published")
    architecture: Mapped[str] = mapped_column(String, default="legacy")  # legacy | session-centric

    event_date: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    start_time: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    end_time: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    # [{name, price, capacity, available_capacity}]
    ticket_types: Mapped[list] = mapped_column(JSON, default=list)
    # [{id, date, start_time, end_time, tickets: [...]}]
    sessions: Mapped[list] = mapped_column(JSON, default=list)

    creator_page_id: Mapped[Optional[str]] = mapped_column(String, nullable=True, index=True)
    creator_user_id: Mapped[Optional[str]] = mapped_column(String, nullable=True, index=True)
    organization_id: Mapped[Optional[str]] = mapped_column(String, nullable=True, index=True)
    created_by: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    authorized_staff: Mapped[list] = mapped_column(JSON, default=list)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    @property
    def is_session_centric(self) -> bool:
        return self.architecture == "session-centric"

    def find_session(self, session_id: Optional[str]) -> Optional[dict]:
        for s in self.sessions or []:
            if s.get("id") == session_id:
                return s
        return None


class Activity(Base):
    __tablename__ = "activities"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String, index=True)
    location: Mapped[str] = mapped_column(String, default="Location TBD")
    status: Mapped[str] = mapped_column(String, default="published")
    price_per_slot: Mapped[float] = mapped_column(Float, default=0)

    # [{day: "Monday", time_slots: [{start_time, end_time, capacity, available_capacity}]}]
    weekly_schedule: Mapped[list] = mapped_column(JSON, default=list)
    closed_dates: Mapped[list] = mapped_column(JSON, default=list)

    creator_page_id: Mapped[Optional[str]] = mapped_column(String, nullable=True, index=True)
    creator_user_id: Mapped[Optional[str]] = mapped_column(String, nullable=True, index=True)
    organization_id: Mapped[Optional[str]] = mapped_column(String, nullable=True, index=True)
    created_by: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    authorized_staff: Mapped[list] = mapped_column(JSON, default=list)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    @property
    def title(self) -> str:
        return self.name

    @property
    def venue(self) -> str:
        return self.location


class Booking(Base):
    """Attendee record: one payment or one manual entry unit."""

    __tablename__ = "bookings"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    type: Mapped[str] = mapped_column(String)  # event | activity
    event_id: Mapped[Optional[str]] = mapped_column(String, ForeignKey("events.id"), nullable=True, index=True)
    activity_id: Mapped[Optional[str]] = mapped_column(
        String, ForeignKey("activities.id"), nullable=True, index=True
    )
    booking_reference: Mapped[Optional[str]] = mapped_column(String, nullable=True, index=True)

    user_id: Mapped[Optional[str]] = mapped_column(String, nullable=True, index=True)
    name: Mapped[str] = mapped_column(String)
    email: Mapped[str] = mapped_column(String)
    phone: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    # {"General": 3, "VIP": 1} for events, an integer for activities
    tickets: Mapped[object] = mapped_column(JSON)
    ticket_type: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    ticket_index: Mapped[int] = mapped_column(Integer, default=1)
    total_tickets_in_booking: Mapped[int] = mapped_column(Integer, default=1)
    individual_amount: Mapped[float] = mapped_column(Float, default=0)
    total_amount: Mapped[float] = mapped_column(Float, default=0)

    session_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    selected_date: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    start_time: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    end_time: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    payment_id: Mapped[Optional[str]] = mapped_column(String, nullable=True, unique=True)
    order_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    payment_status: Mapped[str] = mapped_column(String, default="completed")
    status: Mapped[str] = mapped_column(String, default="confirmed")

    can_check_in_independently: Mapped[bool] = mapped_column(Boolean, default=True)
    checked_in: Mapped[bool] = mapped_column(Boolean, default=False)
    check_in_time: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    checked_in_by: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    added_manually: Mapped[bool] = mapped_column(Boolean, default=False)
    added_by: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    phone_for_future_link: Mapped[Optional[str]] = mapped_column(String, nullable=True, index=True)

    transfer_history: Mapped[list] = mapped_column(JSON, default=list)
    cancellation_info: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))

    issued_tickets: Mapped[list["Ticket"]] = relationship(back_populates="booking")


class Ticket(Base):
    __tablename__ = "tickets"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    ticket_number: Mapped[str] = mapped_column(String, unique=True, index=True)
    qr_code: Mapped[str] = mapped_column(String)

    user_id: Mapped[Optional[str]] = mapped_column(String, nullable=True, index=True)
    user_name: Mapped[str] = mapped_column(String)
    user_email: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    user_phone: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    type: Mapped[str] = mapped_column(String)  # event | activity
    event_id: Mapped[Optional[str]] = mapped_column(String, nullable=True, index=True)
    activity_id: Mapped[Optional[str]] = mapped_column(String, nullable=True, index=True)
    title: Mapped[str] = mapped_column(String)
    venue: Mapped[str] = mapped_column(String)
    session_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    booking_id: Mapped[str] = mapped_column(String, ForeignKey("bookings.id"), index=True)
    selected_date: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    start_time: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    end_time: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    ticket_type: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    amount: Mapped[float] = mapped_column(Float, default=0)
    payment_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    payment_status: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    status: Mapped[str] = mapped_column(String, default=ACTIVE, index=True)
    is_valid: Mapped[bool] = mapped_column(Boolean, default=True)
    used_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    used_by: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    use_location: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    expired_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    expired_reason: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    added_manually: Mapped[bool] = mapped_column(Boolean, default=False)
    added_by: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    phone_for_future_link: Mapped[Optional[str]] = mapped_column(String, nullable=True, index=True)

    cancellation_info: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    validation_history: Mapped[list] = mapped_column(JSON, default=list)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))

    booking: Mapped[Booking] = relationship(back_populates="issued_tickets")

    @property
    def subject_id(self) -> Optional[str]:
        return self.event_id if self.type == EVENT else self.activity_id


class ContentAssignment(Base):
    """Grant of shared rights over a page, event, activity or session."""

    __tablename__ = "content_assignments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    content_type: Mapped[str] = mapped_column(String)  # page | event | activity | session
    content_id: Mapped[str] = mapped_column(String, index=True)
    grantee_id: Mapped[str] = mapped_column(String, index=True)
    role: Mapped[str] = mapped_column(String)  # owner | admin | editor | viewer | checkin
    permissions: Mapped[list] = mapped_column(JSON, default=list)
    granted_by: Mapped[str] = mapped_column(String)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    deactivated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("content_type", "content_id", "grantee_id", name="uniq_content_grantee"),
    )


class EntryLog(Base):
    __tablename__ = "entry_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    decision_id: Mapped[str] = mapped_column(String, index=True)
    ip: Mapped[str] = mapped_column(String)
    user_agent: Mapped[str] = mapped_column(String)
    event_id: Mapped[Optional[str]] = mapped_column(String, index=True, nullable=True)
    ticket_id: Mapped[Optional[str]] = mapped_column(String, index=True, nullable=True)
    ticket_number: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    scanner_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    location: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    status: Mapped[str] = mapped_column(String)
    reason_code: Mapped[str] = mapped_column(String)
    security_flags: Mapped[list] = mapped_column(JSON, default=list)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


def history_entry(action: str, at: datetime, **fields) -> dict:
    """One validation_history record; None-valued fields are dropped."""
    entry = {"timestamp": at.isoformat(), "action": action}
    entry.update({k: v for k, v in fields.items() if v is not None})
    return entry
