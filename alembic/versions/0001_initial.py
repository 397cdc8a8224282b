"""initial schema

Revision ID: 0001
Revises:
Create Date: 2026-10-01 00:00:00.000000

"""

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "0001"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps(*, updated=True):
    cols = [sa.Column("created_at", sa.DateTime(timezone=True), nullable=False)]
    if updated:
        cols.append(sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False))
    return cols


def upgrade() -> None:
    op.create_table(
        "providers",
        sa.Column("id", sa.String(32), primary_key=True),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("email", sa.Text(), nullable=False, unique=True),
        sa.Column("timezone", sa.Text(), nullable=False),
        sa.Column("default_booking_duration", sa.Integer(), nullable=False),
        sa.Column("buffer_minutes", sa.Integer(), nullable=False),
        sa.Column("advance_booking_days", sa.Integer(), nullable=False),
        sa.Column("allowed_durations", sa.JSON(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        *_timestamps(),
    )

    op.create_table(
        "customers",
        sa.Column("id", sa.String(32), primary_key=True),
        sa.Column("email", sa.Text(), nullable=False, unique=True),
        sa.Column("first_name", sa.Text()),
        sa.Column("last_name", sa.Text()),
        sa.Column("phone", sa.Text()),
        *_timestamps(),
    )

    op.create_table(
        "calendar_connections",
        sa.Column("id", sa.String(32), primary_key=True),
        sa.Column("provider_id", sa.String(32), sa.ForeignKey("providers.id", ondelete="CASCADE"), nullable=False),
        sa.Column("platform", sa.String(16), nullable=False),
        sa.Column("account_email", sa.Text(), nullable=False),
        sa.Column("calendar_id", sa.Text(), nullable=False),
        sa.Column("calendar_name", sa.Text()),
        sa.Column("selected_calendars", sa.JSON(), nullable=False),
        sa.Column("calendar_settings", sa.JSON(), nullable=False),
        sa.Column("access_token", sa.Text(), nullable=False),
        sa.Column("refresh_token", sa.Text()),
        sa.Column("token_expiry", sa.DateTime(timezone=True)),
        sa.Column("is_default_for_bookings", sa.Boolean(), nullable=False),
        sa.Column("sync_events", sa.Boolean(), nullable=False),
        sa.Column("allow_bookings", sa.Boolean(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("reauth_required", sa.Boolean(), nullable=False),
        sa.Column("sync_status", sa.String(16), nullable=False),
        sa.Column("last_sync_error", sa.Text()),
        sa.Column("last_sync_at", sa.DateTime(timezone=True)),
        sa.Column("sync_frequency", sa.Integer(), nullable=False),
        sa.Column("subscription_id", sa.Text()),
        sa.Column("webhook_url", sa.Text()),
        sa.Column("subscription_expires_at", sa.DateTime(timezone=True)),
        *_timestamps(),
    )
    op.create_index("ix_calendar_connections_provider_id", "calendar_connections", ["provider_id"])

    op.create_table(
        "calendar_events",
        sa.Column("id", sa.String(32), primary_key=True),
        sa.Column("provider_id", sa.String(32), sa.ForeignKey("providers.id", ondelete="CASCADE"), nullable=False),
        sa.Column(
            "connection_id", sa.String(32),
            sa.ForeignKey("calendar_connections.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("external_event_id", sa.Text(), nullable=False),
        sa.Column("platform", sa.String(16), nullable=False),
        sa.Column("calendar_id", sa.Text(), nullable=False),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column("location", sa.Text()),
        sa.Column("start_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("is_all_day", sa.Boolean(), nullable=False),
        sa.Column("allow_bookings", sa.Boolean(), nullable=False),
        sa.Column("max_bookings", sa.Integer(), nullable=False),
        sa.Column("last_sync_at", sa.DateTime(timezone=True), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint(
            "connection_id", "external_event_id", name="uq_calendar_events_connection_external",
        ),
    )
    op.create_index("ix_calendar_events_provider_start", "calendar_events", ["provider_id", "start_time"])
    op.create_index("ix_calendar_events_connection_calendar", "calendar_events", ["connection_id", "calendar_id"])

    op.create_table(
        "availability_templates",
        sa.Column("id", sa.String(32), primary_key=True),
        sa.Column("provider_id", sa.String(32), sa.ForeignKey("providers.id", ondelete="CASCADE"), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("is_default", sa.Boolean(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        *_timestamps(),
    )
    op.create_index(
        "ix_availability_templates_provider_default", "availability_templates", ["provider_id", "is_default"],
    )

    op.create_table(
        "availability_time_slots",
        sa.Column("id", sa.String(32), primary_key=True),
        sa.Column(
            "template_id", sa.String(32),
            sa.ForeignKey("availability_templates.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("day_of_week", sa.Integer(), nullable=False),
        sa.Column("start_time", sa.String(5), nullable=False),
        sa.Column("end_time", sa.String(5), nullable=False),
        sa.Column("is_enabled", sa.Boolean(), nullable=False),
    )
    op.create_index(
        "ix_availability_time_slots_template_day", "availability_time_slots", ["template_id", "day_of_week"],
    )

    op.create_table(
        "template_assignments",
        sa.Column("id", sa.String(32), primary_key=True),
        sa.Column("provider_id", sa.String(32), sa.ForeignKey("providers.id", ondelete="CASCADE"), nullable=False),
        sa.Column(
            "template_id", sa.String(32),
            sa.ForeignKey("availability_templates.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date()),
        *_timestamps(updated=False),
    )
    op.create_index(
        "ix_template_assignments_provider_dates", "template_assignments", ["provider_id", "start_date", "end_date"],
    )

    op.create_table(
        "bookings",
        sa.Column("id", sa.String(32), primary_key=True),
        sa.Column("customer_id", sa.String(32), sa.ForeignKey("customers.id"), nullable=False),
        sa.Column("provider_id", sa.String(32), sa.ForeignKey("providers.id", ondelete="CASCADE"), nullable=False),
        sa.Column("calendar_event_id", sa.String(32), sa.ForeignKey("calendar_events.id", ondelete="SET NULL")),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("duration", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("service_type", sa.Text(), nullable=False),
        sa.Column("notes", sa.Text()),
        *_timestamps(),
    )
    op.create_index("ix_bookings_provider_scheduled", "bookings", ["provider_id", "scheduled_at"])
    op.create_index("ix_bookings_event_status", "bookings", ["calendar_event_id", "status"])

    op.create_table(
        "provider_locations",
        sa.Column("id", sa.String(32), primary_key=True),
        sa.Column("provider_id", sa.String(32), sa.ForeignKey("providers.id", ondelete="CASCADE"), nullable=False),
        sa.Column("city", sa.Text(), nullable=False),
        sa.Column("state_province", sa.Text(), nullable=False),
        sa.Column("country", sa.Text(), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("is_default", sa.Boolean(), nullable=False),
        *_timestamps(updated=False),
    )
    op.create_index("ix_provider_locations_provider_id", "provider_locations", ["provider_id"])

    op.create_table(
        "location_schedules",
        sa.Column("id", sa.String(32), primary_key=True),
        sa.Column(
            "location_id", sa.String(32),
            sa.ForeignKey("provider_locations.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date()),
        sa.Column("is_recurring", sa.Boolean(), nullable=False),
        sa.Column("recurrence_type", sa.String(16)),
        sa.Column("recurrence_interval", sa.Integer()),
        sa.Column("days_of_week", sa.JSON(), nullable=False),
        sa.Column("week_of_month", sa.Integer()),
        sa.Column("month_of_year", sa.Integer()),
        sa.Column("recurrence_end_date", sa.Date()),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        *_timestamps(updated=False),
    )
    op.create_index("ix_location_schedules_location_id", "location_schedules", ["location_id"])


def downgrade() -> None:
    op.drop_table("location_schedules")
    op.drop_table("provider_locations")
    op.drop_table("bookings")
    op.drop_table("template_assignments")
    op.drop_table("availability_time_slots")
    op.drop_table("availability_templates")
    op.drop_table("calendar_events")
    op.drop_table("calendar_connections")
    op.drop_table("customers")
    op.drop_table("providers")
