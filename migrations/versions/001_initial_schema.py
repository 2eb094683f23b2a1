"""Initial schema: bookings, carpool tables and the read-only registries.

Revision ID: 001
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa


revision = "001"
down_revision = None
branch_labels = None
depends_on = None

BOOKING_STATUSES = (
    "DRAFT",
    "SUBMITTED",
    "APPROVED_L1",
    "APPROVED_L2",
    "ASSIGNED",
    "MERGED",
    "COMPLETED",
    "REJECTED",
    "CANCELLED",
)


def _audit_columns():
    return [
        sa.Column("created_by", sa.String(64), nullable=True),
        sa.Column("updated_by", sa.String(64), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
    ]


def upgrade() -> None:
    # ── bookings ──────────────────────────────────────────────────────
    op.create_table(
        "bookings",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("booking_number", sa.String(40), nullable=False, server_default=""),
        sa.Column("requester_id", sa.String(64), nullable=True),
        sa.Column("start_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("passenger_count", sa.Integer, default=1, nullable=False),
        sa.Column(
            "booking_status",
            sa.Enum(*BOOKING_STATUSES, name="bookingstatus"),
            default="DRAFT",
            nullable=False,
        ),
        sa.Column("carpool_group_id", sa.Integer, nullable=True),
        *_audit_columns(),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        "idx_bookings_status_start", "bookings", ["booking_status", "start_at"]
    )
    op.create_index("idx_bookings_group", "bookings", ["carpool_group_id"])
    op.create_index("idx_bookings_requester", "bookings", ["requester_id"])

    # ── booking_segments ──────────────────────────────────────────────
    op.create_table(
        "booking_segments",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "booking_id", sa.Integer, sa.ForeignKey("bookings.id"), nullable=False
        ),
        sa.Column("segment_no", sa.Integer, default=1, nullable=False),
        sa.Column("origin", sa.String(255), nullable=False),
        sa.Column("destination", sa.String(255), nullable=False),
        sa.Column("origin_lat", sa.Float, nullable=True),
        sa.Column("origin_lng", sa.Float, nullable=True),
        sa.Column("destination_lat", sa.Float, nullable=True),
        sa.Column("destination_lng", sa.Float, nullable=True),
        sa.Column("route_polyline", sa.Text, nullable=True),
        sa.Column(
            "geocode_validated", sa.Boolean, server_default=sa.false(), nullable=False
        ),
        sa.Column("est_km", sa.Float, nullable=True),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        "idx_segments_booking", "booking_segments", ["booking_id", "segment_no"]
    )

    # ── carpool_groups ────────────────────────────────────────────────
    op.create_table(
        "carpool_groups",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "host_booking_id",
            sa.Integer,
            sa.ForeignKey("bookings.id"),
            nullable=False,
        ),
        sa.Column(
            "status",
            sa.Enum("Active", "Merged", "Unmerged", name="carpoolgroupstatus"),
            default="Active",
            nullable=False,
        ),
        sa.Column("combined_route", sa.JSON, nullable=True),
        sa.Column("pre_merge_distance", sa.Float, nullable=True),
        sa.Column("post_merge_distance", sa.Float, nullable=True),
        sa.Column("detour_percentage", sa.Float, nullable=True),
        sa.Column("shared_cost", sa.JSON, nullable=True),
        sa.Column(
            "cost_mode",
            sa.Enum("EQUAL", "PROPORTIONAL_DISTANCE", name="costmode"),
            nullable=True,
        ),
        *_audit_columns(),
    )
    op.create_index(
        "idx_carpool_groups_host_status",
        "carpool_groups",
        ["host_booking_id", "status"],
    )
    op.create_index(
        "uq_carpool_groups_active_host",
        "carpool_groups",
        ["host_booking_id"],
        unique=True,
        postgresql_where=sa.text("status = 'Active'"),
    )

    # ── carpool_invites ───────────────────────────────────────────────
    op.create_table(
        "carpool_invites",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "carpool_group_id",
            sa.Integer,
            sa.ForeignKey("carpool_groups.id"),
            nullable=False,
        ),
        sa.Column(
            "host_booking_id",
            sa.Integer,
            sa.ForeignKey("bookings.id"),
            nullable=False,
        ),
        sa.Column(
            "joiner_booking_id",
            sa.Integer,
            sa.ForeignKey("bookings.id"),
            nullable=False,
        ),
        sa.Column(
            "consent_status",
            sa.Enum(
                "PENDING",
                "APPROVED",
                "DECLINED",
                "EXPIRED",
                name="carpoolconsentstatus",
            ),
            default="PENDING",
            nullable=False,
        ),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("responded_at", sa.DateTime(timezone=True), nullable=True),
        *_audit_columns(),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("idx_carpool_invites_group", "carpool_invites", ["carpool_group_id"])
    op.create_index(
        "idx_carpool_invites_joiner", "carpool_invites", ["joiner_booking_id"]
    )
    op.create_index(
        "uq_carpool_invites_open_joiner",
        "carpool_invites",
        ["carpool_group_id", "joiner_booking_id"],
        unique=True,
        postgresql_where=sa.text(
            "consent_status IN ('PENDING', 'APPROVED') AND deleted_at IS NULL"
        ),
    )

    # ── carpool_audit_logs (append-only, no FKs) ──────────────────────
    op.create_table(
        "carpool_audit_logs",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("carpool_group_id", sa.Integer, nullable=True),
        sa.Column("host_booking_id", sa.Integer, nullable=True),
        sa.Column("joiner_booking_id", sa.Integer, nullable=True),
        sa.Column(
            "action_type",
            sa.Enum(
                "MATCHED",
                "INVITE",
                "APPROVE",
                "DECLINE",
                "MERGE",
                "UNMERGE",
                "COST_RECALCULATED",
                name="carpoolactiontype",
            ),
            nullable=False,
        ),
        sa.Column("actor_id", sa.String(64), nullable=False),
        sa.Column("old_value", sa.JSON, nullable=True),
        sa.Column("new_value", sa.JSON, nullable=True),
        sa.Column("metadata", sa.JSON, nullable=True),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "idx_carpool_audit_group_ts",
        "carpool_audit_logs",
        ["carpool_group_id", "timestamp"],
    )

    # ── param_sets / param_items ──────────────────────────────────────
    op.create_table(
        "param_sets",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("version", sa.Integer, nullable=False),
        sa.Column("status", sa.String(20), server_default="Draft", nullable=False),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        "idx_param_sets_status_version", "param_sets", ["status", "version"]
    )
    op.create_table(
        "param_items",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "param_set_id",
            sa.Integer,
            sa.ForeignKey("param_sets.id"),
            nullable=False,
        ),
        sa.Column("group", sa.String(40), nullable=False),
        sa.Column("name", sa.String(80), nullable=False),
        sa.Column("value", sa.String(255), nullable=False),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
    )

    # ── cost_variables ────────────────────────────────────────────────
    op.create_table(
        "cost_variables",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("code", sa.String(60), unique=True, nullable=False),
        sa.Column("name", sa.String(120), nullable=False),
        sa.Column("category", sa.String(40), nullable=False),
        sa.Column("unit", sa.String(20), nullable=False),
        sa.Column("value", sa.Float, nullable=False),
        sa.Column("currency", sa.String(3), server_default="IDR"),
        sa.Column("is_active", sa.Boolean, server_default=sa.true(), nullable=False),
        sa.Column("effective_from", sa.DateTime(timezone=True), nullable=False),
        sa.Column("effective_to", sa.DateTime(timezone=True), nullable=True),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
    )


def downgrade() -> None:
    op.drop_table("cost_variables")
    op.drop_table("param_items")
    op.drop_table("param_sets")
    op.drop_table("carpool_audit_logs")
    op.drop_table("carpool_invites")
    op.drop_table("carpool_groups")
    op.drop_table("booking_segments")
    op.drop_table("bookings")
    op.execute("DROP TYPE IF EXISTS carpoolactiontype")
    op.execute("DROP TYPE IF EXISTS carpoolconsentstatus")
    op.execute("DROP TYPE IF EXISTS costmode")
    op.execute("DROP TYPE IF EXISTS carpoolgroupstatus")
    op.execute("DROP TYPE IF EXISTS bookingstatus")
