"""
Request bodies.

Booking payloads and imported event/activity documents arrive with either
snake_case or the older camelCase field names; both are accepted here and
nothing downstream sees the legacy spellings.
"""

from typing import Any, Dict, List, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, EmailStr, Field, field_validator

from .timeutil import iso


def _alias(*names: str) -> AliasChoices:
    return AliasChoices(*names)


class _Lenient(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


# --- booking / payment ---

class TimeSlot(_Lenient):
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    session_id: Optional[str] = Field(default=None, validation_alias=_alias("session_id", "sessionId"))


class SelectedSession(_Lenient):
    id: Optional[str] = None
    date: Optional[str] = None
    start_time: Optional[str] = None
    end_time: Optional[str] = None


class BookingData(_Lenient):
    """Client booking payload. Structural checks live in booking.validate_booking_structure."""

    user_id: Optional[str] = Field(default=None, validation_alias=_alias("user_id", "userId"))
    event_id: Optional[str] = Field(default=None, validation_alias=_alias("event_id", "eventId"))
    activity_id: Optional[str] = Field(default=None, validation_alias=_alias("activity_id", "activityId"))
    name: Optional[str] = None
    email: Optional[EmailStr] = None
    phone: Optional[str] = None
    selected_date: Optional[str] = Field(default=None, validation_alias=_alias("selected_date", "selectedDate"))
    selected_time_slot: Optional[TimeSlot] = Field(
        default=None, validation_alias=_alias("selected_time_slot", "selectedTimeSlot")
    )
    selected_session: Optional[SelectedSession] = Field(
        default=None, validation_alias=_alias("selected_session", "selectedSession")
    )
    tickets: Optional[Union[int, Dict[str, int]]] = None
    total_amount: Optional[float] = Field(default=None, validation_alias=_alias("total_amount", "totalAmount"))

    @property
    def session_id(self) -> Optional[str]:
        if self.selected_session and self.selected_session.id:
            return self.selected_session.id
        if self.selected_time_slot:
            return self.selected_time_slot.session_id
        return None


class CreateOrderReq(BaseModel):
    # checked by hand so a string amount is a 400, not coerced
    amount: Any = None
    currency: str = "INR"
    receipt: Optional[str] = None
    notes: Any = None


class VerifyPaymentReq(_Lenient):
    razorpay_order_id: str
    razorpay_payment_id: str
    razorpay_signature: str
    booking_type: str = Field(validation_alias=_alias("booking_type", "bookingType"))
    booking_data: BookingData = Field(validation_alias=_alias("booking_data", "bookingData"))


# --- scanning / tickets ---

class VerifyEntryReq(_Lenient):
    ticket_number: str = Field(validation_alias=_alias("ticket_number", "ticketNumber"))
    event_id: Optional[str] = Field(default=None, validation_alias=_alias("event_id", "eventId"))
    location: Optional[str] = None


class TransferReq(_Lenient):
    new_name: str = Field(validation_alias=_alias("new_name", "newName"))
    new_email: EmailStr = Field(validation_alias=_alias("new_email", "newEmail"))
    new_phone: Optional[str] = Field(default=None, validation_alias=_alias("new_phone", "newPhone"))


class CancelReq(_Lenient):
    ticket_ids: List[str] = Field(validation_alias=_alias("ticket_ids", "ticketIds"))
    reason: str
    refund_amount: Optional[float] = Field(default=None, validation_alias=_alias("refund_amount", "refundAmount"))


class ManualAttendeeReq(_Lenient):
    event_id: str = Field(validation_alias=_alias("event_id", "eventId"))
    name: str
    email: EmailStr
    phone: str
    ticket_type: str = Field(validation_alias=_alias("ticket_type", "ticketType"))
    quantity: int = 1


# --- sharing ---

class GrantAccessReq(_Lenient):
    content_type: str = Field(validation_alias=_alias("content_type", "contentType"))
    content_id: str = Field(validation_alias=_alias("content_id", "contentId"))
    grantee_id: str = Field(validation_alias=_alias("grantee_id", "granteeId", "userId"))
    role: str
    permissions: List[str] = Field(default_factory=list)
    expires_in_hours: Optional[float] = Field(
        default=None, validation_alias=_alias("expires_in_hours", "expiresInHours")
    )


# --- imported documents ---

class CreatorRef(_Lenient):
    type: Optional[str] = None
    page_id: Optional[str] = Field(default=None, validation_alias=_alias("page_id", "pageId"))
    user_id: Optional[str] = Field(default=None, validation_alias=_alias("user_id", "userId"))


def _normalise_ticket_types(value: Any) -> List[Dict[str, Any]]:
    out = []
    for t in value or []:
        capacity = int(t.get("capacity", 0))
        out.append({
            "name": t["name"],
            "price": float(t.get("price", 0)),
            "capacity": capacity,
            "available_capacity": int(t.get("available_capacity", t.get("availableCapacity", capacity))),
        })
    return out


class EventImport(_Lenient):
    id: str
    title: str = Field(validation_alias=_alias("title", "eventTitle", "event_title"))
    venue: str = Field(default="Venue TBD", validation_alias=_alias("venue", "eventVenue", "event_venue"))
    status: str = "published"
    architecture: str = "legacy"
    event_date: Optional[str] = Field(default=None, validation_alias=_alias("event_date", "eventDate", "date"))
    start_time: Optional[str] = Field(default=None, validation_alias=_alias("start_time", "startTime"))
    end_time: Optional[str] = Field(default=None, validation_alias=_alias("end_time", "endTime"))
    ticket_types: List[Dict[str, Any]] = Field(
        default_factory=list, validation_alias=_alias("ticket_types", "tickets")
    )
    sessions: List[Dict[str, Any]] = Field(default_factory=list)
    creator: Optional[CreatorRef] = None
    organization_id: Optional[str] = Field(
        default=None, validation_alias=_alias("organization_id", "organizationId")
    )
    created_by: Optional[str] = Field(default=None, validation_alias=_alias("created_by", "createdBy"))
    authorized_staff: List[str] = Field(
        default_factory=list, validation_alias=_alias("authorized_staff", "authorizedStaff")
    )

    @field_validator("ticket_types", mode="before")
    @classmethod
    def _ticket_types(cls, v):
        return _normalise_ticket_types(v)

    @field_validator("sessions", mode="before")
    @classmethod
    def _sessions(cls, v):
        return [{**s, "tickets": _normalise_ticket_types(s.get("tickets"))} for s in v or []]


class ActivityImport(_Lenient):
    id: str
    name: str = Field(validation_alias=_alias("name", "activityName", "title"))
    location: str = Field(default="Location TBD", validation_alias=_alias("location", "venue"))
    status: str = "published"
    price_per_slot: float = Field(default=0, validation_alias=_alias("price_per_slot", "pricePerSlot"))
    weekly_schedule: List[Dict[str, Any]] = Field(
        default_factory=list, validation_alias=_alias("weekly_schedule", "weeklySchedule")
    )
    closed_dates: List[str] = Field(default_factory=list, validation_alias=_alias("closed_dates", "closedDates"))
    creator: Optional[CreatorRef] = None
    organization_id: Optional[str] = Field(
        default=None, validation_alias=_alias("organization_id", "organizationId")
    )
    created_by: Optional[str] = Field(default=None, validation_alias=_alias("created_by", "createdBy"))
    authorized_staff: List[str] = Field(
        default_factory=list, validation_alias=_alias("authorized_staff", "authorizedStaff")
    )

    @field_validator("weekly_schedule", mode="before")
    @classmethod
    def _schedule(cls, v):
        days = []
        for day in v or []:
            slots = []
            for slot in day.get("time_slots", day.get("timeSlots", [])):
                capacity = int(slot.get("capacity", 0))
                slots.append({
                    "start_time": slot["start_time"],
                    "end_time": slot["end_time"],
                    "capacity": capacity,
                    "available_capacity": int(slot.get("available_capacity", capacity)),
                })
            days.append({"day": day["day"], "time_slots": slots})
        return days


# --- responses ---

def ticket_out(ticket, display: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    out = {
        "id": ticket.id,
        "ticket_number": ticket.ticket_number,
        "qr_code": ticket.qr_code,
        "type": ticket.type,
        "event_id": ticket.event_id,
        "activity_id": ticket.activity_id,
        "session_id": ticket.session_id,
        "booking_id": ticket.booking_id,
        "title": ticket.title,
        "venue": ticket.venue,
        "selected_date": ticket.selected_date,
        "start_time": ticket.start_time,
        "end_time": ticket.end_time,
        "ticket_type": ticket.ticket_type,
        "amount": ticket.amount,
        "user_id": ticket.user_id,
        "user_name": ticket.user_name,
        "status": ticket.status,
        "used_at": iso(ticket.used_at) if ticket.used_at else None,
        "created_at": iso(ticket.created_at) if ticket.created_at else None,
    }
    if display is not None:
        out["display"] = display
    return out
