import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()
metadata = Base.metadata


def _new_id() -> str:
    return uuid.uuid4().hex


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Platform(str, enum.Enum):
    GOOGLE = "GOOGLE"
    OUTLOOK = "OUTLOOK"
    TEAMS = "TEAMS"
    APPLE = "APPLE"


class BookingStatus(str, enum.Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    CANCELLED = "CANCELLED"
    RESCHEDULED = "RESCHEDULED"


# Bookings in these states hold capacity and occupy time
ACTIVE_BOOKING_STATUSES = (
    BookingStatus.PENDING,
    BookingStatus.CONFIRMED,
    BookingStatus.RESCHEDULED,
)

DEFAULT_ALLOWED_DURATIONS = [15, 30, 45, 60, 90]


class SyncStatus(str, enum.Enum):
    IDLE = "IDLE"
    SYNCING = "SYNCING"
    DEGRADED = "DEGRADED"


class Provider(Base):
    __tablename__ = 'providers'

    id = Column(String(32), primary_key=True, default=_new_id)
    name = Column(Text, nullable=False)
    email = Column(Text, nullable=False, unique=True)
    timezone = Column(Text, nullable=False, default="UTC")
    default_booking_duration = Column(Integer, nullable=False, default=60)
    buffer_minutes = Column(Integer, nullable=False, default=15)
    advance_booking_days = Column(Integer, nullable=False, default=30)
    allowed_durations = Column(JSON, nullable=False, default=lambda: list(DEFAULT_ALLOWED_DURATIONS))
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    connections = relationship(
        'CalendarConnection', back_populates='provider',
        cascade='all, delete-orphan', passive_deletes=True,
    )
    templates = relationship(
        'AvailabilityTemplate', back_populates='provider',
        cascade='all, delete-orphan', passive_deletes=True,
    )
    locations = relationship(
        'ProviderLocation', back_populates='provider',
        cascade='all, delete-orphan', passive_deletes=True,
    )
    bookings = relationship(
        'Booking', back_populates='provider',
        cascade='all, delete-orphan', passive_deletes=True,
    )


class Customer(Base):
    __tablename__ = 'customers'

    id = Column(String(32), primary_key=True, default=_new_id)
    email = Column(Text, nullable=False, unique=True)
    first_name = Column(Text)
    last_name = Column(Text)
    phone = Column(Text)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    bookings = relationship('Booking', back_populates='customer')


class CalendarConnection(Base):
    __tablename__ = 'calendar_connections'

    id = Column(String(32), primary_key=True, default=_new_id)
    provider_id = Column(ForeignKey('providers.id', ondelete='CASCADE'), nullable=False, index=True)
    platform = Column(Enum(Platform, native_enum=False, length=16), nullable=False)
    account_email = Column(Text, nullable=False)
    # Primary remote calendar; selected_calendars may add more
    calendar_id = Column(Text, nullable=False, default="primary")
    calendar_name = Column(Text)
    selected_calendars = Column(JSON, nullable=False, default=list)
    # {calendar_id: {"sync_enabled": bool, "booking_enabled": bool}}
    calendar_settings = Column(JSON, nullable=False, default=dict)
    access_token = Column(Text, nullable=False)
    refresh_token = Column(Text)
    token_expiry = Column(DateTime(timezone=True))
    is_default_for_bookings = Column(Boolean, nullable=False, default=False)
    sync_events = Column(Boolean, nullable=False, default=True)
    allow_bookings = Column(Boolean, nullable=False, default=True)
    is_active = Column(Boolean, nullable=False, default=True)
    reauth_required = Column(Boolean, nullable=False, default=False)
    sync_status = Column(Enum(SyncStatus, native_enum=False, length=16), nullable=False, default=SyncStatus.IDLE)
    last_sync_error = Column(Text)
    last_sync_at = Column(DateTime(timezone=True))
    sync_frequency = Column(Integer, nullable=False, default=15)
    subscription_id = Column(Text)
    webhook_url = Column(Text)
    subscription_expires_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    provider = relationship('Provider', back_populates='connections')
    events = relationship(
        'CalendarEvent', back_populates='connection',
        cascade='all, delete-orphan', passive_deletes=True,
    )

    def calendar_ids(self) -> list[str]:
        """Remote calendars covered by this connection, primary first."""
        ids = [self.calendar_id]
        for cal_id in self.selected_calendars or []:
            if cal_id not in ids:
                ids.append(cal_id)
        return ids

    def calendar_flag(self, calendar_id: str, flag: str) -> bool:
        return bool((self.calendar_settings or {}).get(calendar_id, {}).get(flag, True))


class CalendarEvent(Base):
    __tablename__ = 'calendar_events'
    __table_args__ = (
        UniqueConstraint('connection_id', 'external_event_id', name='uq_calendar_events_connection_external'),
        Index('ix_calendar_events_provider_start', 'provider_id', 'start_time'),
        Index('ix_calendar_events_connection_calendar', 'connection_id', 'calendar_id'),
    )

    id = Column(String(32), primary_key=True, default=_new_id)
    provider_id = Column(ForeignKey('providers.id', ondelete='CASCADE'), nullable=False)
    connection_id = Column(ForeignKey('calendar_connections.id', ondelete='CASCADE'), nullable=False)
    external_event_id = Column(Text, nullable=False)
    platform = Column(Enum(Platform, native_enum=False, length=16), nullable=False)
    calendar_id = Column(Text, nullable=False)
    title = Column(Text, nullable=False)
    description = Column(Text)
    location = Column(Text)
    start_time = Column(DateTime(timezone=True), nullable=False)
    end_time = Column(DateTime(timezone=True), nullable=False)
    is_all_day = Column(Boolean, nullable=False, default=False)
    allow_bookings = Column(Boolean, nullable=False, default=False)
    max_bookings = Column(Integer, nullable=False, default=1)
    last_sync_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    connection = relationship('CalendarConnection', back_populates='events')
    bookings = relationship('Booking', back_populates='calendar_event', passive_deletes=True)


class AvailabilityTemplate(Base):
    __tablename__ = 'availability_templates'
    __table_args__ = (
        Index('ix_availability_templates_provider_default', 'provider_id', 'is_default'),
    )

    id = Column(String(32), primary_key=True, default=_new_id)
    provider_id = Column(ForeignKey('providers.id', ondelete='CASCADE'), nullable=False)
    name = Column(Text, nullable=False)
    is_default = Column(Boolean, nullable=False, default=False)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    provider = relationship('Provider', back_populates='templates')
    time_slots = relationship(
        'TimeSlot', back_populates='template',
        cascade='all, delete-orphan', passive_deletes=True,
        order_by=lambda: [TimeSlot.day_of_week, TimeSlot.start_time],
    )
    assignments = relationship(
        'TemplateAssignment', back_populates='template',
        cascade='all, delete-orphan', passive_deletes=True,
    )


class TimeSlot(Base):
    __tablename__ = 'availability_time_slots'
    __table_args__ = (
        Index('ix_availability_time_slots_template_day', 'template_id', 'day_of_week'),
    )

    id = Column(String(32), primary_key=True, default=_new_id)
    template_id = Column(ForeignKey('availability_templates.id', ondelete='CASCADE'), nullable=False)
    day_of_week = Column(Integer, nullable=False)  # 0 = Sunday
    start_time = Column(String(5), nullable=False)  # "HH:MM"
    end_time = Column(String(5), nullable=False)
    is_enabled = Column(Boolean, nullable=False, default=True)

    template = relationship('AvailabilityTemplate', back_populates='time_slots')


class TemplateAssignment(Base):
    __tablename__ = 'template_assignments'
    __table_args__ = (
        Index('ix_template_assignments_provider_dates', 'provider_id', 'start_date', 'end_date'),
    )

    id = Column(String(32), primary_key=True, default=_new_id)
    provider_id = Column(ForeignKey('providers.id', ondelete='CASCADE'), nullable=False)
    template_id = Column(ForeignKey('availability_templates.id', ondelete='CASCADE'), nullable=False)
    start_date = Column(Date, nullable=False)
    end_date = Column(Date)  # None = open-ended
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    template = relationship('AvailabilityTemplate', back_populates='assignments')


class Booking(Base):
    __tablename__ = 'bookings'
    __table_args__ = (
        Index('ix_bookings_provider_scheduled', 'provider_id', 'scheduled_at'),
        Index('ix_bookings_event_status', 'calendar_event_id', 'status'),
    )

    id = Column(String(32), primary_key=True, default=_new_id)
    customer_id = Column(ForeignKey('customers.id'), nullable=False)
    provider_id = Column(ForeignKey('providers.id', ondelete='CASCADE'), nullable=False)
    calendar_event_id = Column(ForeignKey('calendar_events.id', ondelete='SET NULL'))
    scheduled_at = Column(DateTime(timezone=True), nullable=False)
    duration = Column(Integer, nullable=False)  # minutes
    status = Column(Enum(BookingStatus, native_enum=False, length=16), nullable=False, default=BookingStatus.PENDING)
    service_type = Column(Text, nullable=False)
    notes = Column(Text)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    customer = relationship('Customer', back_populates='bookings')
    provider = relationship('Provider', back_populates='bookings')
    calendar_event = relationship('CalendarEvent', back_populates='bookings')


class ProviderLocation(Base):
    __tablename__ = 'provider_locations'

    id = Column(String(32), primary_key=True, default=_new_id)
    provider_id = Column(ForeignKey('providers.id', ondelete='CASCADE'), nullable=False, index=True)
    city = Column(Text, nullable=False)
    state_province = Column(Text, nullable=False)
    country = Column(Text, nullable=False)
    description = Column(Text)
    is_active = Column(Boolean, nullable=False, default=True)
    is_default = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    provider = relationship('Provider', back_populates='locations')
    schedules = relationship(
        'LocationSchedule', back_populates='location',
        cascade='all, delete-orphan', passive_deletes=True,
    )


class RecurrenceType(str, enum.Enum):
    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    BIWEEKLY = "BIWEEKLY"
    MONTHLY = "MONTHLY"


class LocationSchedule(Base):
    __tablename__ = 'location_schedules'

    id = Column(String(32), primary_key=True, default=_new_id)
    location_id = Column(ForeignKey('provider_locations.id', ondelete='CASCADE'), nullable=False, index=True)
    start_date = Column(Date, nullable=False)
    end_date = Column(Date)
    is_recurring = Column(Boolean, nullable=False, default=False)
    recurrence_type = Column(Enum(RecurrenceType, native_enum=False, length=16))
    recurrence_interval = Column(Integer)
    days_of_week = Column(JSON, nullable=False, default=list)  # 0 = Sunday
    week_of_month = Column(Integer)
    month_of_year = Column(Integer)
    recurrence_end_date = Column(Date)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    location = relationship('ProviderLocation', back_populates='schedules')
