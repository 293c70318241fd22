"""
Database Models

SQLAlchemy ORM models for the counseling appointment system.
"""

import uuid
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Optional

from sqlalchemy import (
    JSON, Boolean, Date, DateTime, ForeignKey, Index, Integer, String, Text,
    TypeDecorator, UniqueConstraint, Uuid,
    Enum as SQLEnum,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _utcnow() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """Timezone-aware datetime stored as UTC.

    PostgreSQL keeps the offset natively; SQLite gets naive UTC values,
    which still compare correctly as text.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: Optional[datetime], dialect: Any) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        value = value.astimezone(timezone.utc)
        if dialect.name != "postgresql":
            value = value.replace(tzinfo=None)
        return value

    def process_result_value(self, value: Optional[datetime], dialect: Any) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


def _enum(enum_cls: type[Enum]) -> SQLEnum:
    """Store enum values (not names) in a portable VARCHAR column."""
    return SQLEnum(
        enum_cls,
        native_enum=False,
        length=32,
        values_callable=lambda members: [m.value for m in members],
    )


class Base(DeclarativeBase):
    """Base class for all database models."""
    pass


class TimestampMixin:
    """Mixin that adds created_at and updated_at timestamp columns."""

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        default=_utcnow,
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        default=_utcnow,
        onupdate=_utcnow,
        nullable=False
    )


class SoftDeleteMixin:
    """Mixin that adds soft delete functionality."""

    is_deleted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime,
        nullable=True
    )


class AppointmentStatus(str, Enum):
    """Appointment status enumeration."""
    PENDING = "pending"
    PENDING_PAYMENT = "pending_payment"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


class PaymentStatus(str, Enum):
    """Payment status enumeration."""
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


class ReminderType(str, Enum):
    """Reminder offset enumeration."""
    DAY_BEFORE = "day_before"
    HOUR_BEFORE = "hour_before"


class ReminderStatus(str, Enum):
    """Reminder delivery status. Transitions are one-way out of PENDING."""
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


# Statuses that occupy a provider's calendar
ACTIVE_APPOINTMENT_STATUSES = (
    AppointmentStatus.PENDING,
    AppointmentStatus.PENDING_PAYMENT,
    AppointmentStatus.CONFIRMED,
    AppointmentStatus.COMPLETED,
)


class Provider(Base, TimestampMixin):
    """
    Provider model (counselors).

    The provider row doubles as the lock surrogate for its calendar:
    every reservation locks it before checking for overlaps.
    """

    __tablename__ = "providers"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4
    )
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    phone: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    specialty: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    def __repr__(self) -> str:
        return f"<Provider(id={self.id}, name='{self.name}')>"


class Client(Base, TimestampMixin):
    """
    Client model.

    Intake details gathered by the booking dialogue.
    """

    __tablename__ = "clients"
    __table_args__ = (
        Index("idx_client_channel_user", "channel_user_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4
    )
    full_name: Mapped[str] = mapped_column(String(200), nullable=False)
    date_of_birth: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    phone: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    channel_user_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    emergency_contact_name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    emergency_contact_phone: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    therapy_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    session_goals: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    previous_therapy: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)

    def __repr__(self) -> str:
        return f"<Client(id={self.id}, name='{self.full_name}')>"


class Appointment(Base, TimestampMixin, SoftDeleteMixin):
    """
    Appointment model.

    For a fixed provider, no two appointments outside CANCELLED may have
    overlapping [start, end) intervals. ``code`` is unique forever, so
    rows are soft-deleted rather than removed.
    """

    __tablename__ = "appointments"
    __table_args__ = (
        Index("idx_appointment_provider_start", "provider_id", "start_ts"),
        Index("idx_appointment_channel_user", "channel_user_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4
    )
    code: Mapped[str] = mapped_column(String(16), unique=True, nullable=False)
    provider_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("providers.id", ondelete="CASCADE"),
        nullable=False
    )
    client_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid,
        ForeignKey("clients.id", ondelete="SET NULL"),
        nullable=True
    )
    start: Mapped[datetime] = mapped_column("start_ts", UTCDateTime, nullable=False)
    end: Mapped[datetime] = mapped_column("end_ts", UTCDateTime, nullable=False)
    status: Mapped[AppointmentStatus] = mapped_column(
        _enum(AppointmentStatus),
        default=AppointmentStatus.PENDING,
        nullable=False
    )
    payment_status: Mapped[PaymentStatus] = mapped_column(
        _enum(PaymentStatus),
        default=PaymentStatus.PENDING,
        nullable=False
    )
    session_type: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    payment_method: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    channel_user_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    channel_username: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    @property
    def duration_minutes(self) -> int:
        """Length of the booked interval in minutes."""
        return int((self.end - self.start).total_seconds() // 60)

    def to_dict(self) -> dict:
        """Convert to dictionary for API responses."""
        return {
            "id": str(self.id),
            "code": self.code,
            "provider_id": str(self.provider_id),
            "client_id": str(self.client_id) if self.client_id else None,
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "status": self.status.value,
            "payment_status": self.payment_status.value,
            "session_type": self.session_type,
            "payment_method": self.payment_method,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self) -> str:
        return (
            f"<Appointment(code={self.code}, provider_id={self.provider_id}, "
            f"start={self.start}, status={self.status.value})>"
        )


class AvailabilitySlot(Base, TimestampMixin):
    """Pre-declared bookable window for a provider."""

    __tablename__ = "availability_slots"
    __table_args__ = (
        Index("idx_slot_provider_start", "provider_id", "start_ts"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4
    )
    provider_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("providers.id", ondelete="CASCADE"),
        nullable=False
    )
    start: Mapped[datetime] = mapped_column("start_ts", UTCDateTime, nullable=False)
    end: Mapped[datetime] = mapped_column("end_ts", UTCDateTime, nullable=False)
    is_booked: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    appointment_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid,
        ForeignKey("appointments.id", ondelete="SET NULL"),
        nullable=True
    )

    def to_dict(self) -> dict:
        return {
            "id": str(self.id),
            "provider_id": str(self.provider_id),
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "is_booked": self.is_booked,
            "appointment_id": str(self.appointment_id) if self.appointment_id else None,
        }


class AbsenceDay(Base, TimestampMixin):
    """A calendar date on which a provider takes no appointments."""

    __tablename__ = "absence_days"
    __table_args__ = (
        UniqueConstraint("provider_id", "date", name="uq_absence_provider_date"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4
    )
    provider_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("providers.id", ondelete="CASCADE"),
        nullable=False
    )
    date: Mapped[date] = mapped_column(Date, nullable=False)
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


class ReminderJob(Base, TimestampMixin):
    """
    Scheduled reminder for an appointment.

    At most one job per (appointment, type); status only ever leaves
    PENDING once.
    """

    __tablename__ = "reminder_jobs"
    __table_args__ = (
        UniqueConstraint("appointment_id", "type", name="uq_reminder_appointment_type"),
        Index("idx_reminder_due", "status", "scheduled_for"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4
    )
    appointment_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("appointments.id", ondelete="CASCADE"),
        nullable=False
    )
    type: Mapped[ReminderType] = mapped_column(_enum(ReminderType), nullable=False)
    scheduled_for: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    status: Mapped[ReminderStatus] = mapped_column(
        _enum(ReminderStatus),
        default=ReminderStatus.PENDING,
        nullable=False
    )
    sent_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


class SupportTicket(Base, TimestampMixin):
    """Support request raised through the support dialogue."""

    __tablename__ = "support_tickets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    channel_user_id: Mapped[str] = mapped_column(String(100), nullable=False)
    channel_username: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    subject: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[str] = mapped_column(String(50), default="General")
    priority: Mapped[str] = mapped_column(String(20), default="medium")
    status: Mapped[str] = mapped_column(String(20), default="open")


class MentorshipProgram(Base, TimestampMixin):
    """Mentorship program offered by a provider."""

    __tablename__ = "mentorship_programs"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    price_cents: Mapped[int] = mapped_column(Integer, default=0)
    provider_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid,
        ForeignKey("providers.id", ondelete="SET NULL"),
        nullable=True
    )


class MentorshipApplication(Base, TimestampMixin):
    """Application submitted through the mentorship dialogue."""

    __tablename__ = "mentorship_applications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    program_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid,
        ForeignKey("mentorship_programs.id", ondelete="SET NULL"),
        nullable=True
    )
    program_title: Mapped[str] = mapped_column(String(255), nullable=False)
    applicant_name: Mapped[str] = mapped_column(String(200), nullable=False)
    contact_info: Mapped[str] = mapped_column(String(255), nullable=False)
    payment_method: Mapped[str] = mapped_column(String(50), nullable=False)
    payment_reference: Mapped[str] = mapped_column(String(255), nullable=False)
    additional_details: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(20), default="submitted")
    provider_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    channel_user_id: Mapped[str] = mapped_column(String(100), nullable=False)


class Book(Base, TimestampMixin):
    """Book offered for sale."""

    __tablename__ = "books"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    author: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    price_cents: Mapped[int] = mapped_column(Integer, default=0)
    is_available: Mapped[bool] = mapped_column(Boolean, default=True)


class BookOrder(Base, TimestampMixin):
    """Order placed through the book-order dialogue."""

    __tablename__ = "book_orders"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    book_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid,
        ForeignKey("books.id", ondelete="SET NULL"),
        nullable=True
    )
    channel_user_id: Mapped[str] = mapped_column(String(100), nullable=False)
    client_name: Mapped[str] = mapped_column(String(200), nullable=False)
    client_email: Mapped[str] = mapped_column(String(255), nullable=False)
    client_phone: Mapped[str] = mapped_column(String(50), nullable=False)
    client_address: Mapped[str] = mapped_column(Text, nullable=False)
    client_city: Mapped[str] = mapped_column(String(100), nullable=False)
    client_country: Mapped[str] = mapped_column(String(100), nullable=False)
    client_county: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    client_postal_code: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    payment_method: Mapped[str] = mapped_column(String(50), nullable=False)
    payment_reference: Mapped[str] = mapped_column(Text, nullable=False)
    payment_amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    shipping_cost_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    total_amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    payment_status: Mapped[PaymentStatus] = mapped_column(
        _enum(PaymentStatus),
        default=PaymentStatus.PENDING,
        nullable=False
    )


class AppointmentReview(Base, TimestampMixin):
    """Client review of a completed session."""

    __tablename__ = "appointment_reviews"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    appointment_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("appointments.id", ondelete="CASCADE"),
        nullable=False
    )
    client_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    provider_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    rating: Mapped[int] = mapped_column(Integer, nullable=False)
    session_quality: Mapped[str] = mapped_column(String(20), nullable=False)
    would_recommend: Mapped[bool] = mapped_column(Boolean, nullable=False)
    review_text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    additional_feedback: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


class PaymentTransaction(Base, TimestampMixin):
    """Record of a payment gateway callback."""

    __tablename__ = "payment_transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    reference: Mapped[str] = mapped_column(String(100), nullable=False)
    reference_type: Mapped[str] = mapped_column(String(20), default="appointment")
    payment_method: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    amount_cents: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    transaction_id: Mapped[Optional[str]] = mapped_column(String(100), unique=True, nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    gateway_response: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
