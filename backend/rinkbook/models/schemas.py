"""
Pydantic schemas for the hockey training booking engine.
"""

import re
import uuid
from datetime import date, datetime, timezone
from enum import Enum
from typing import List, Optional, Dict, Any
from pydantic import BaseModel, Field, field_validator, ConfigDict


TIME_SLOT_PATTERN = re.compile(r"^(1[0-2]|0?[1-9]):([0-5]\d)\s*(AM|PM)$", re.IGNORECASE)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _short_id() -> str:
    return str(uuid.uuid4())[:8].upper()


def normalize_time_slot(value: str) -> str:
    """Canonical "H:MM AM" form so "06:00 pm" and "6:00 PM" compare equal."""
    match = TIME_SLOT_PATTERN.match(value.strip())
    if not match:
        raise ValueError(f"Invalid time slot: {value!r} (expected e.g. '5:45 PM')")
    hours, minutes, period = match.groups()
    return f"{int(hours)}:{minutes} {period.upper()}"


def time_slot_to_24h(value: str) -> tuple:
    """Convert a "5:45 PM" style slot to (hour, minute)."""
    match = TIME_SLOT_PATTERN.match(value.strip())
    if not match:
        return 0, 0
    hours, minutes, period = match.groups()
    hour = int(hours) % 12
    if period.upper() == "PM":
        hour += 12
    return hour, int(minutes)


class SessionType(str, Enum):
    """Bookable session types."""
    GROUP = "group"
    SUNDAY = "sunday"
    PRIVATE = "private"
    SEMI_PRIVATE = "semi_private"


class DayOfWeek(str, Enum):
    MONDAY = "monday"
    TUESDAY = "tuesday"
    WEDNESDAY = "wednesday"
    THURSDAY = "thursday"
    FRIDAY = "friday"
    SATURDAY = "saturday"
    SUNDAY = "sunday"

    @property
    def weekday(self) -> int:
        """Python weekday number (Monday == 0)."""
        return list(DayOfWeek).index(self)


class CreditPackageType(str, Enum):
    SINGLE = "single"
    TEN_PACK = "10_pack"
    TWENTY_PACK = "20_pack"
    FIFTY_PACK = "50_pack"


class LotStatus(str, Enum):
    ACTIVE = "active"
    EXHAUSTED = "exhausted"
    EXPIRED = "expired"


class BookingStatus(str, Enum):
    CONFIRMED = "confirmed"
    ATTENDED = "attended"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    VERIFIED = "verified"
    FAILED = "failed"
    SLOT_UNAVAILABLE = "slot_unavailable"
    CANCELLED = "cancelled"


CONFIRMED_PAYMENT_STATUSES = (PaymentStatus.SUCCEEDED, PaymentStatus.VERIFIED)


class ProgramType(str, Enum):
    GROUP = "group"
    PRIVATE = "private"
    SEMI_PRIVATE = "semi_private"


class SagaStatus(str, Enum):
    """Booking saga workflow status."""
    REQUESTED = "requested"
    CAPACITY_CHECKED = "capacity_checked"
    CREDIT_DEBITED = "credit_debited"
    BOOKING_CREATED = "booking_created"
    REJECTED = "rejected"
    COMPENSATING = "compensating"
    CREDIT_REFUNDED = "credit_refunded"
    COMPENSATION_FAILED = "compensation_failed"


TERMINAL_SAGA_STATUSES = (
    SagaStatus.BOOKING_CREATED,
    SagaStatus.REJECTED,
    SagaStatus.CREDIT_REFUNDED,
    SagaStatus.COMPENSATION_FAILED,
)


class EventType(str, Enum):
    """Event types published while a booking saga runs."""
    BOOKING_REQUESTED = "booking.requested"
    CAPACITY_CHECKED = "capacity.checked"
    SLOT_FULL = "capacity.slot_full"
    DUPLICATE_REJECTED = "booking.duplicate_rejected"
    CREDIT_DEBITED = "credit.debited"
    CREDIT_INSUFFICIENT = "credit.insufficient"
    BOOKING_CREATED = "booking.created"
    BOOKING_FAILED = "booking.failed"
    COMPENSATION_STARTED = "compensation.started"
    COMPENSATION_COMPLETED = "compensation.completed"
    COMPENSATION_FAILED = "compensation.failed"


class ErrorCode(str, Enum):
    """Typed failure reasons surfaced to callers."""
    VALIDATION_ERROR = "validation_error"
    NOT_FOUND = "not_found"
    INVALID_SESSION = "invalid_session"
    WRONG_SESSION_TYPE = "wrong_session_type"
    MALFORMED_METADATA = "malformed_metadata"
    SLOT_FULL = "slot_full"
    DUPLICATE_BOOKING = "duplicate_booking"
    INSUFFICIENT_CREDIT = "insufficient_credit"
    BOOKING_CREATION_FAILED = "booking_creation_failed"
    COMPENSATION_FAILED = "compensation_failed"
    SLOT_UNAVAILABLE = "slot_unavailable"
    ALREADY_CANCELLED = "already_cancelled"
    SESSION_ALREADY_OCCURRED = "session_already_occurred"
    DEPENDENCY_ERROR = "dependency_error"


# Datastore records

class CreditAccount(BaseModel):
    """Aggregate credit balance of one parent."""
    owner_id: str
    total_credits: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class CreditPurchaseLot(BaseModel):
    """One purchased (or administratively granted) batch of credits."""
    id: str = Field(default_factory=lambda: f"lot_{uuid.uuid4().hex[:12]}")
    owner_id: str
    package_type: Optional[CreditPackageType] = None
    credits_purchased: int
    credits_remaining: int
    price_paid: float = 0.0
    currency: str = "cad"
    checkout_session_id: Optional[str] = None
    payment_reference_id: Optional[str] = None
    purchased_at: datetime = Field(default_factory=utcnow)
    expires_at: datetime
    status: LotStatus = LotStatus.ACTIVE

    def to_redis_hash(self) -> Dict[str, str]:
        """Flatten to string fields for a Redis hash (the Lua scripts read these)."""
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "package_type": self.package_type.value if self.package_type else "",
            "credits_purchased": str(self.credits_purchased),
            "credits_remaining": str(self.credits_remaining),
            "price_paid": str(self.price_paid),
            "currency": self.currency,
            "checkout_session_id": self.checkout_session_id or "",
            "payment_reference_id": self.payment_reference_id or "",
            "purchased_at": self.purchased_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "expires_ts": str(int(self.expires_at.timestamp())),
            "status": self.status.value,
        }

    @classmethod
    def from_redis_hash(cls, data: Dict[str, str]) -> "CreditPurchaseLot":
        """Create from a Redis hash."""
        return cls(
            id=data["id"],
            owner_id=data["owner_id"],
            package_type=data.get("package_type") or None,
            credits_purchased=int(data["credits_purchased"]),
            credits_remaining=int(data["credits_remaining"]),
            price_paid=float(data.get("price_paid") or 0),
            currency=data.get("currency") or "cad",
            checkout_session_id=data.get("checkout_session_id") or None,
            payment_reference_id=data.get("payment_reference_id") or None,
            purchased_at=datetime.fromisoformat(data["purchased_at"]),
            expires_at=datetime.fromisoformat(data["expires_at"]),
            status=LotStatus(data["status"]),
        )


class SessionBooking(BaseModel):
    """One occupied slot instance."""
    id: str = Field(default_factory=lambda: f"bk_{uuid.uuid4().hex[:12]}")
    owner_id: str
    registration_id: str
    session_type: SessionType
    session_date: date
    time_slot: str
    credits_used: int = 0
    credit_purchase_lot_id: Optional[str] = None
    is_recurring: bool = False
    recurring_schedule_id: Optional[str] = None
    status: BookingStatus = BookingStatus.CONFIRMED
    saga_request_id: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class RecurringSchedule(BaseModel):
    """Standing weekly commitment."""
    id: str = Field(default_factory=lambda: f"rs_{uuid.uuid4().hex[:12]}")
    owner_id: str
    registration_id: str
    session_type: SessionType
    day_of_week: DayOfWeek
    time_slot: str
    is_active: bool = True
    paused_reason: Optional[str] = None
    last_booked_date: Optional[date] = None
    next_booking_date: date
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class RegistrationForm(BaseModel):
    """Program selection captured by the registration form."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    program_type: Optional[ProgramType] = Field(default=None, alias="programType")
    group_selected_days: List[str] = Field(default_factory=list, alias="groupSelectedDays")
    private_selected_days: List[str] = Field(default_factory=list, alias="privateSelectedDays")
    private_time_slot: Optional[str] = Field(default=None, alias="privateTimeSlot")
    semi_private_availability: List[str] = Field(default_factory=list, alias="semiPrivateAvailability")
    semi_private_time_slot: Optional[str] = Field(default=None, alias="semiPrivateTimeSlot")
    semi_private_time_windows: List[str] = Field(default_factory=list, alias="semiPrivateTimeWindows")
    player_full_name: Optional[str] = Field(default=None, alias="playerFullName")
    parent_email: Optional[str] = Field(default=None, alias="parentEmail")

    @field_validator("program_type", mode="before")
    @classmethod
    def normalize_program_type(cls, v):
        # The form historically sent "semi-private"
        if isinstance(v, str):
            # Drafts store an empty program type
            return v.strip().lower().replace("-", "_") or None
        return v

    def semi_private_time(self) -> Optional[str]:
        """Chosen semi-private time, falling back to the first offered window."""
        if self.semi_private_time_slot:
            return self.semi_private_time_slot
        if self.semi_private_time_windows:
            return self.semi_private_time_windows[0]
        return None


class RegistrationRecord(BaseModel):
    """Player registration on the subscription path."""
    id: str = Field(default_factory=lambda: f"reg_{uuid.uuid4().hex[:12]}")
    owner_id: str
    payment_status: PaymentStatus = PaymentStatus.PENDING
    form_data: RegistrationForm = Field(default_factory=RegistrationForm)
    customer_ref: Optional[str] = None
    subscription_ref: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class CreditAdjustmentRecord(BaseModel):
    """Audit entry for an administrative credit adjustment."""
    owner_id: str
    adjustment: int
    balance_before: int
    balance_after: int
    reason: str
    admin_id: str
    created_at: datetime = Field(default_factory=utcnow)


# Collaborator answers

class CapacityReport(BaseModel):
    """Capacity oracle answer for one slot."""
    session_date: date
    time_slot: str
    session_type: SessionType
    max_capacity: int
    current_bookings: int
    available_spots: int
    is_available: bool


class CheckoutSession(BaseModel):
    """The fields of a gateway checkout session this engine relies on."""
    id: str
    status: Optional[str] = None
    payment_status: Optional[str] = None
    metadata: Dict[str, str] = {}
    customer_ref: Optional[str] = None
    subscription_ref: Optional[str] = None
    payment_reference_id: Optional[str] = None
    client_reference_id: Optional[str] = None
    amount_total: Optional[int] = None
    currency: Optional[str] = None


# Requests

class TimeSlotRequest(BaseModel):
    """Base for requests naming a time slot."""
    time_slot: str

    @field_validator("time_slot")
    @classmethod
    def validate_time_slot(cls, v: str) -> str:
        return normalize_time_slot(v)


class FulfillmentRequest(BaseModel):
    checkout_session_id: str = Field(..., min_length=1)


class BookingRequest(TimeSlotRequest):
    """Credit-funded booking request from client."""
    owner_id: str = Field(..., min_length=1)
    registration_id: str = Field(..., min_length=1)
    session_type: SessionType
    session_date: date
    is_recurring: bool = False
    recurring_schedule_id: Optional[str] = None


class CancelBookingRequest(BaseModel):
    owner_id: str = Field(..., min_length=1)
    reason: Optional[str] = None


class ScheduleRequest(TimeSlotRequest):
    owner_id: str = Field(..., min_length=1)
    registration_id: str = Field(..., min_length=1)
    session_type: SessionType
    day_of_week: DayOfWeek
    starts_on: Optional[date] = None

    @field_validator("day_of_week", mode="before")
    @classmethod
    def lower_day(cls, v):
        return v.strip().lower() if isinstance(v, str) else v


class ScheduleUpdateRequest(BaseModel):
    owner_id: str = Field(..., min_length=1)
    is_active: Optional[bool] = None
    paused_reason: Optional[str] = None


class CreditAdjustmentRequest(BaseModel):
    owner_id: str = Field(..., min_length=1)
    adjustment: int
    reason: str
    admin_id: str = Field(..., min_length=1)

    @field_validator("adjustment")
    @classmethod
    def non_zero(cls, v: int) -> int:
        if v == 0:
            raise ValueError("Adjustment must be a non-zero integer (positive to add, negative to subtract)")
        return v

    @field_validator("reason")
    @classmethod
    def meaningful_reason(cls, v: str) -> str:
        if len(v.strip()) < 5:
            raise ValueError("Reason must be at least 5 characters")
        return v.strip()


class PaymentVerificationRequest(BaseModel):
    checkout_session_id: str = Field(..., min_length=1)


# Results

class OperationResult(BaseModel):
    """Common failure fields of every engine result."""
    success: bool
    error_code: Optional[ErrorCode] = None
    error_message: Optional[str] = None


class FulfillmentResult(OperationResult):
    already_processed: bool = False
    credits_added: int = 0
    new_balance: Optional[int] = None
    package_type: Optional[CreditPackageType] = None
    amount_paid: Optional[float] = None
    lot_id: Optional[str] = None
    expires_at: Optional[datetime] = None


class BookingResult(OperationResult):
    """Final booking saga result."""
    request_id: str
    booking_id: Optional[str] = None
    booking_date: Optional[date] = None
    credits_remaining: Optional[int] = None
    retryable: bool = False


class CancellationResult(OperationResult):
    booking_id: str
    credits_refunded: int = 0
    credits_remaining: Optional[int] = None
    message: Optional[str] = None


class FirstBookingOutcome(BaseModel):
    success: bool
    message: str
    booking_date: Optional[date] = None
    booking_id: Optional[str] = None
    error_code: Optional[ErrorCode] = None


class ScheduleResult(OperationResult):
    schedule: Optional[RecurringSchedule] = None
    first_booking: Optional[FirstBookingOutcome] = None
    message: Optional[str] = None


class RecurringRunStats(BaseModel):
    processed: int = 0
    booked: int = 0
    already_booked: int = 0
    paused_insufficient_credits: int = 0
    paused_slot_unavailable: int = 0
    errors: int = 0


class PaymentVerificationResult(OperationResult):
    registration_id: Optional[str] = None
    payment_status: Optional[PaymentStatus] = None
    refund_required: bool = Field(default=False, serialization_alias="refundRequired")
    message: Optional[str] = None


class AdjustmentResult(OperationResult):
    new_balance: Optional[int] = None
    message: Optional[str] = None


class CreditBalanceSummary(BaseModel):
    owner_id: str
    total_credits: int
    lot_balance: int
    in_sync: bool
    expiring_soon: int
    next_expiry_date: Optional[datetime] = None
    lots: List[CreditPurchaseLot] = []


class BalanceReconciliation(BaseModel):
    owner_id: str
    balance_before: int
    balance_after: int
    credits_expired: int


class SagaReconciliationReport(BaseModel):
    examined: int = 0
    refunded: int = 0
    closed: int = 0
    failed: int = 0
    request_ids: List[str] = []


# Saga intent

class BookingIntent(BaseModel):
    """Booking saga state stored in Redis before the credit is touched."""
    request_id: str = Field(default_factory=_short_id)
    status: SagaStatus = SagaStatus.REQUESTED
    owner_id: str
    registration_id: str
    session_type: SessionType
    session_date: date
    time_slot: str
    is_recurring: bool = False
    recurring_schedule_id: Optional[str] = None
    credits_required: int = 1
    credit_debited: bool = False
    credit_lot_id: Optional[str] = None
    booking_id: Optional[str] = None
    credits_remaining: Optional[int] = None
    error_code: Optional[ErrorCode] = None
    error_message: Optional[str] = None
    events: List[Dict[str, Any]] = []
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @classmethod
    def from_request(cls, request: BookingRequest, credits_required: int) -> "BookingIntent":
        return cls(
            owner_id=request.owner_id,
            registration_id=request.registration_id,
            session_type=request.session_type,
            session_date=request.session_date,
            time_slot=request.time_slot,
            is_recurring=request.is_recurring,
            recurring_schedule_id=request.recurring_schedule_id,
            credits_required=credits_required,
        )

    def add_event(self, event_type: EventType, message: str, details: Optional[Dict] = None):
        """Add event to audit trail."""
        self.events.append({
            "type": event_type.value,
            "message": message,
            "details": details or {},
            "timestamp": utcnow().isoformat()
        })
        self.updated_at = utcnow()

    def fail(self, code: ErrorCode, message: str) -> None:
        self.error_code = code
        self.error_message = message

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_SAGA_STATUSES


class EventPayload(BaseModel):
    """Event message payload."""
    event_type: EventType
    request_id: str
    timestamp: datetime = Field(default_factory=utcnow)
    data: Dict[str, Any] = {}
