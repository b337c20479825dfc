"""Initial Happenings schema."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None


def _where(condition: str) -> dict:
    return {
        "sqlite_where": sa.text(condition),
        "postgresql_where": sa.text(condition),
    }


def upgrade() -> None:
    op.create_table(
        "meta",
        sa.Column("key", sa.String(length=128), nullable=False),
        sa.Column("value", sa.Text(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("key"),
    )

    op.create_table(
        "members",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("display_name", sa.String(length=120), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("api_token", sa.String(length=128), nullable=False),
        sa.Column("is_admin", sa.Boolean(), nullable=False),
        sa.Column("no_show_count", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("email"),
        sa.UniqueConstraint("api_token"),
    )

    op.create_table(
        "events",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("slug", sa.String(length=160), nullable=False),
        sa.Column("host_id", sa.String(length=36), nullable=True),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("venue_name", sa.String(length=255), nullable=True),
        sa.Column("venue_address", sa.String(length=255), nullable=True),
        sa.Column("start_time", sa.String(length=8), nullable=True),
        sa.Column("end_time", sa.String(length=8), nullable=True),
        sa.Column("event_date", sa.String(length=10), nullable=True),
        sa.Column("day_of_week", sa.String(length=16), nullable=True),
        sa.Column("recurrence_rule", sa.String(length=255), nullable=True),
        sa.Column("recurrence_end_date", sa.String(length=10), nullable=True),
        sa.Column("max_occurrences", sa.Integer(), nullable=True),
        sa.Column("custom_dates", sa.JSON(), nullable=True),
        sa.Column("capacity", sa.Integer(), nullable=True),
        sa.Column("has_timeslots", sa.Boolean(), nullable=False),
        sa.Column("total_slots", sa.Integer(), nullable=True),
        sa.Column("slot_duration_minutes", sa.Integer(), nullable=True),
        sa.Column("slot_offer_window_minutes", sa.Integer(), nullable=True),
        sa.Column(
            "visibility", sa.String(length=16), nullable=False, server_default="public"
        ),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="draft"),
        sa.Column("published_at", sa.DateTime(), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["host_id"], ["members.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("slug"),
    )

    op.create_table(
        "event_hosts",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("event_id", sa.String(length=36), nullable=False),
        sa.Column("member_id", sa.String(length=36), nullable=False),
        sa.Column("role", sa.String(length=16), nullable=False),
        sa.Column("invitation_status", sa.String(length=16), nullable=False),
        sa.Column("invited_by", sa.String(length=36), nullable=True),
        sa.Column("responded_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["event_id"], ["events.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["member_id"], ["members.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["invited_by"], ["members.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("event_id", "member_id", name="uq_event_hosts"),
    )

    op.create_table(
        "occurrence_overrides",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("event_id", sa.String(length=36), nullable=False),
        sa.Column("date_key", sa.String(length=10), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("note", sa.Text(), nullable=True),
        sa.Column("updated_by", sa.String(length=36), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["event_id"], ["events.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("event_id", "date_key", name="uq_occurrence_overrides"),
    )

    op.create_table(
        "rsvps",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("event_id", sa.String(length=36), nullable=False),
        sa.Column("date_key", sa.String(length=10), nullable=False),
        sa.Column("member_id", sa.String(length=36), nullable=True),
        sa.Column("guest_name", sa.String(length=120), nullable=True),
        sa.Column("guest_email", sa.String(length=255), nullable=True),
        sa.Column("guest_verified", sa.Boolean(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("waitlist_position", sa.Integer(), nullable=True),
        sa.Column("offer_expires_at", sa.DateTime(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["event_id"], ["events.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["member_id"], ["members.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "uq_rsvps_active_member",
        "rsvps",
        ["event_id", "date_key", "member_id"],
        unique=True,
        **_where("status != 'cancelled' AND member_id IS NOT NULL"),
    )
    op.create_index(
        "uq_rsvps_active_guest",
        "rsvps",
        ["event_id", "date_key", "guest_email"],
        unique=True,
        **_where("status != 'cancelled' AND guest_email IS NOT NULL"),
    )
    op.create_index(
        "ix_rsvps_occurrence_status", "rsvps", ["event_id", "date_key", "status"]
    )

    op.create_table(
        "event_timeslots",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("event_id", sa.String(length=36), nullable=False),
        sa.Column("date_key", sa.String(length=10), nullable=False),
        sa.Column("slot_index", sa.Integer(), nullable=False),
        sa.Column("start_offset_minutes", sa.Integer(), nullable=True),
        sa.Column("duration_minutes", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["event_id"], ["events.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "event_id", "date_key", "slot_index", name="uq_event_timeslots_slot"
        ),
    )

    op.create_table(
        "timeslot_claims",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("timeslot_id", sa.String(length=36), nullable=False),
        sa.Column("event_id", sa.String(length=36), nullable=False),
        sa.Column("date_key", sa.String(length=10), nullable=False),
        sa.Column("member_id", sa.String(length=36), nullable=True),
        sa.Column("guest_name", sa.String(length=120), nullable=True),
        sa.Column("guest_email", sa.String(length=255), nullable=True),
        sa.Column("guest_verified", sa.Boolean(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("waitlist_position", sa.Integer(), nullable=True),
        sa.Column("offer_expires_at", sa.DateTime(), nullable=True),
        sa.Column("updated_by", sa.String(length=36), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(
            ["timeslot_id"], ["event_timeslots.id"], ondelete="CASCADE"
        ),
        sa.ForeignKeyConstraint(["event_id"], ["events.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["member_id"], ["members.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "uq_timeslot_claims_holder",
        "timeslot_claims",
        ["timeslot_id"],
        unique=True,
        **_where("status IN ('confirmed', 'offered', 'performed')"),
    )
    op.create_index(
        "uq_timeslot_claims_open_member",
        "timeslot_claims",
        ["event_id", "date_key", "member_id"],
        unique=True,
        **_where(
            "status IN ('confirmed', 'offered', 'waitlist') AND member_id IS NOT NULL"
        ),
    )
    op.create_index(
        "uq_timeslot_claims_open_guest",
        "timeslot_claims",
        ["event_id", "date_key", "guest_email"],
        unique=True,
        **_where(
            "status IN ('confirmed', 'offered', 'waitlist') AND guest_email IS NOT NULL"
        ),
    )

    op.create_table(
        "lineup_states",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("event_id", sa.String(length=36), nullable=False),
        sa.Column("date_key", sa.String(length=10), nullable=False),
        sa.Column("now_playing_timeslot_id", sa.String(length=36), nullable=True),
        sa.Column("updated_by", sa.String(length=36), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["event_id"], ["events.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(
            ["now_playing_timeslot_id"], ["event_timeslots.id"], ondelete="SET NULL"
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("event_id", "date_key", name="uq_lineup_states"),
    )

    op.create_table(
        "attendee_invites",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("event_id", sa.String(length=36), nullable=False),
        sa.Column("member_id", sa.String(length=36), nullable=True),
        sa.Column("email", sa.String(length=255), nullable=True),
        sa.Column("token_hash", sa.String(length=64), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("invited_by", sa.String(length=36), nullable=True),
        sa.Column("expires_at", sa.DateTime(), nullable=True),
        sa.Column("accepted_at", sa.DateTime(), nullable=True),
        sa.Column("declined_at", sa.DateTime(), nullable=True),
        sa.Column("revoked_at", sa.DateTime(), nullable=True),
        sa.Column("revoked_by", sa.String(length=36), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["event_id"], ["events.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["member_id"], ["members.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["invited_by"], ["members.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("token_hash"),
    )
    op.create_index(
        "uq_attendee_invites_member",
        "attendee_invites",
        ["event_id", "member_id"],
        unique=True,
        **_where("status IN ('pending', 'accepted') AND member_id IS NOT NULL"),
    )
    op.create_index(
        "uq_attendee_invites_email",
        "attendee_invites",
        ["event_id", "email"],
        unique=True,
        **_where("status IN ('pending', 'accepted') AND email IS NOT NULL"),
    )

    op.create_table(
        "guest_verifications",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("guest_name", sa.String(length=120), nullable=False),
        sa.Column("event_id", sa.String(length=36), nullable=False),
        sa.Column("date_key", sa.String(length=10), nullable=False),
        sa.Column("kind", sa.String(length=16), nullable=False),
        sa.Column("slot_index", sa.Integer(), nullable=True),
        sa.Column("timeslot_id", sa.String(length=36), nullable=True),
        sa.Column("code_hash", sa.String(length=64), nullable=True),
        sa.Column("code_expires_at", sa.DateTime(), nullable=True),
        sa.Column("code_attempts", sa.Integer(), nullable=False),
        sa.Column("locked_until", sa.DateTime(), nullable=True),
        sa.Column("verified_at", sa.DateTime(), nullable=True),
        sa.Column("rsvp_id", sa.String(length=36), nullable=True),
        sa.Column("claim_id", sa.String(length=36), nullable=True),
        sa.Column("token_used", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["event_id"], ["events.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(
            ["timeslot_id"], ["event_timeslots.id"], ondelete="SET NULL"
        ),
        sa.ForeignKeyConstraint(["rsvp_id"], ["rsvps.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(
            ["claim_id"], ["timeslot_claims.id"], ondelete="SET NULL"
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_guest_verifications_email_event",
        "guest_verifications",
        ["email", "event_id"],
    )


def downgrade() -> None:
    op.drop_index("ix_guest_verifications_email_event", table_name="guest_verifications")
    op.drop_table("guest_verifications")
    op.drop_index("uq_attendee_invites_email", table_name="attendee_invites")
    op.drop_index("uq_attendee_invites_member", table_name="attendee_invites")
    op.drop_table("attendee_invites")
    op.drop_table("lineup_states")
    op.drop_index("uq_timeslot_claims_open_guest", table_name="timeslot_claims")
    op.drop_index("uq_timeslot_claims_open_member", table_name="timeslot_claims")
    op.drop_index("uq_timeslot_claims_holder", table_name="timeslot_claims")
    op.drop_table("timeslot_claims")
    op.drop_table("event_timeslots")
    op.drop_index("ix_rsvps_occurrence_status", table_name="rsvps")
    op.drop_index("uq_rsvps_active_guest", table_name="rsvps")
    op.drop_index("uq_rsvps_active_member", table_name="rsvps")
    op.drop_table("rsvps")
    op.drop_table("occurrence_overrides")
    op.drop_table("event_hosts")
    op.drop_table("events")
    op.drop_table("members")
    op.drop_table("meta")
