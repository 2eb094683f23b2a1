"""
SQLAlchemy ORM models  (maps to PostgreSQL).

Tables
------
* ``bookings``            -- trip requests (owned by the booking module)
* ``booking_segments``    -- ordered legs of a booking
* ``carpool_groups``      -- a host booking plus the joiners merged into it
* ``carpool_invites``     -- double-consent invitations
* ``carpool_audit_logs``  -- append-only lifecycle trail
* ``param_sets`` / ``param_items`` -- versioned tunables (read-only here)
* ``cost_variables``      -- cost-rate registry (read-only here)

Indexes
-------
* **B-Tree** on ``booking_status`` + ``start_at`` for the candidate scan,
  on ``carpool_group_id`` for member look-ups and on invite / audit foreign
  keys for the merge validation and the audit read-back.
* **Partial unique** indexes: one Active group per host booking, one open
  (PENDING / APPROVED) invite per joiner and group.
"""

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
    text,
)
from sqlalchemy.orm import relationship

from .database import Base
from carpool.domain.enums import (
    AuditAction,
    BookingStatus,
    ConsentStatus,
    CostMode,
    GroupStatus,
)


def _values(enum_cls):
    return [member.value for member in enum_cls]


class BookingModel(Base):
    __tablename__ = "bookings"

    id = Column(Integer, primary_key=True, autoincrement=True)
    booking_number = Column(String(40), nullable=False, default="")
    requester_id = Column(String(64), nullable=True)
    start_at = Column(DateTime(timezone=True), nullable=False)
    end_at = Column(DateTime(timezone=True), nullable=False)
    passenger_count = Column(Integer, default=1, nullable=False)
    booking_status = Column(
        Enum(BookingStatus, name="bookingstatus"),
        default=BookingStatus.DRAFT,
        nullable=False,
    )
    # No FK: carpool_groups already references bookings
    carpool_group_id = Column(Integer, nullable=True)

    created_by = Column(String(64), nullable=True)
    updated_by = Column(String(64), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    segments = relationship(
        "SegmentModel",
        lazy="selectin",
        order_by="SegmentModel.segment_no",
    )

    __table_args__ = (
        Index("idx_bookings_status_start", "booking_status", "start_at"),
        Index("idx_bookings_group", "carpool_group_id"),
        Index("idx_bookings_requester", "requester_id"),
    )


class SegmentModel(Base):
    __tablename__ = "booking_segments"

    id = Column(Integer, primary_key=True, autoincrement=True)
    booking_id = Column(Integer, ForeignKey("bookings.id"), nullable=False)
    segment_no = Column(Integer, default=1, nullable=False)

    origin = Column(String(255), nullable=False)
    destination = Column(String(255), nullable=False)

    # Plain floats: the carpool core never runs spatial queries
    origin_lat = Column(Float, nullable=True)
    origin_lng = Column(Float, nullable=True)
    destination_lat = Column(Float, nullable=True)
    destination_lng = Column(Float, nullable=True)

    route_polyline = Column(Text, nullable=True)
    geocode_validated = Column(Boolean, default=False, nullable=False)
    est_km = Column(Float, nullable=True)
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (Index("idx_segments_booking", "booking_id", "segment_no"),)


class CarpoolGroupModel(Base):
    __tablename__ = "carpool_groups"

    id = Column(Integer, primary_key=True, autoincrement=True)
    host_booking_id = Column(Integer, ForeignKey("bookings.id"), nullable=False)
    status = Column(
        Enum(GroupStatus, name="carpoolgroupstatus", values_callable=_values),
        default=GroupStatus.ACTIVE,
        nullable=False,
    )
    combined_route = Column(JSON, nullable=True)
    pre_merge_distance = Column(Float, nullable=True)
    post_merge_distance = Column(Float, nullable=True)
    detour_percentage = Column(Float, nullable=True)
    shared_cost = Column(JSON, nullable=True)
    cost_mode = Column(Enum(CostMode, name="costmode"), nullable=True)

    created_by = Column(String(64), nullable=True)
    updated_by = Column(String(64), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        Index("idx_carpool_groups_host_status", "host_booking_id", "status"),
        # one Active group per host
        Index(
            "uq_carpool_groups_active_host",
            "host_booking_id",
            unique=True,
            postgresql_where=text("status = 'Active'"),
            sqlite_where=text("status = 'Active'"),
        ),
    )


_OPEN_INVITE = "consent_status IN ('PENDING', 'APPROVED') AND deleted_at IS NULL"


class CarpoolInviteModel(Base):
    __tablename__ = "carpool_invites"

    id = Column(Integer, primary_key=True, autoincrement=True)
    carpool_group_id = Column(
        Integer, ForeignKey("carpool_groups.id"), nullable=False
    )
    host_booking_id = Column(Integer, ForeignKey("bookings.id"), nullable=False)
    joiner_booking_id = Column(Integer, ForeignKey("bookings.id"), nullable=False)
    consent_status = Column(
        Enum(ConsentStatus, name="carpoolconsentstatus"),
        default=ConsentStatus.PENDING,
        nullable=False,
    )
    expires_at = Column(DateTime(timezone=True), nullable=False)
    responded_at = Column(DateTime(timezone=True), nullable=True)

    created_by = Column(String(64), nullable=True)
    updated_by = Column(String(64), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("idx_carpool_invites_group", "carpool_group_id"),
        Index("idx_carpool_invites_joiner", "joiner_booking_id"),
        # one open invite per joiner and group
        Index(
            "uq_carpool_invites_open_joiner",
            "carpool_group_id",
            "joiner_booking_id",
            unique=True,
            postgresql_where=text(_OPEN_INVITE),
            sqlite_where=text(_OPEN_INVITE),
        ),
    )


class CarpoolAuditLogModel(Base):
    __tablename__ = "carpool_audit_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    carpool_group_id = Column(Integer, nullable=True)
    host_booking_id = Column(Integer, nullable=True)
    joiner_booking_id = Column(Integer, nullable=True)
    action_type = Column(Enum(AuditAction, name="carpoolactiontype"), nullable=False)
    actor_id = Column(String(64), nullable=False)
    old_value = Column(JSON, nullable=True)
    new_value = Column(JSON, nullable=True)
    # "metadata" is reserved on declarative classes
    metadata_ = Column("metadata", JSON, nullable=True)
    timestamp = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("idx_carpool_audit_group_ts", "carpool_group_id", "timestamp"),
    )


class ParamSetModel(Base):
    __tablename__ = "param_sets"

    id = Column(Integer, primary_key=True, autoincrement=True)
    version = Column(Integer, nullable=False)
    status = Column(String(20), default="Draft", nullable=False)
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    items = relationship("ParamItemModel", lazy="selectin")

    __table_args__ = (Index("idx_param_sets_status_version", "status", "version"),)


class ParamItemModel(Base):
    __tablename__ = "param_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    param_set_id = Column(Integer, ForeignKey("param_sets.id"), nullable=False)
    group = Column(String(40), nullable=False)
    name = Column(String(80), nullable=False)
    value = Column(String(255), nullable=False)
    deleted_at = Column(DateTime(timezone=True), nullable=True)


class CostVariableModel(Base):
    __tablename__ = "cost_variables"

    id = Column(Integer, primary_key=True, autoincrement=True)
    code = Column(String(60), unique=True, nullable=False)
    name = Column(String(120), nullable=False)
    category = Column(String(40), nullable=False)
    unit = Column(String(20), nullable=False)
    value = Column(Float, nullable=False)
    currency = Column(String(3), default="IDR")
    is_active = Column(Boolean, default=True, nullable=False)
    effective_from = Column(DateTime(timezone=True), nullable=False)
    effective_to = Column(DateTime(timezone=True), nullable=True)
    deleted_at = Column(DateTime(timezone=True), nullable=True)
