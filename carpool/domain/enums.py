"""Domain enumerations and state-transition rules."""

import enum


class BookingStatus(str, enum.Enum):
    DRAFT = "DRAFT"
    SUBMITTED = "SUBMITTED"
    APPROVED_L1 = "APPROVED_L1"
    APPROVED_L2 = "APPROVED_L2"
    ASSIGNED = "ASSIGNED"
    MERGED = "MERGED"
    COMPLETED = "COMPLETED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"


# Bookings that may still be pulled into a carpool
CANDIDATE_POOL_STATUSES: frozenset[BookingStatus] = frozenset(
    {BookingStatus.DRAFT, BookingStatus.SUBMITTED, BookingStatus.APPROVED_L1}
)


class GroupStatus(str, enum.Enum):
    ACTIVE = "Active"
    MERGED = "Merged"
    UNMERGED = "Unmerged"


# State machine: maps current status -> set of valid next statuses
GROUP_TRANSITIONS: dict[GroupStatus, set[GroupStatus]] = {
    GroupStatus.ACTIVE: {GroupStatus.MERGED, GroupStatus.UNMERGED},
    GroupStatus.MERGED: {GroupStatus.UNMERGED},
    GroupStatus.UNMERGED: set(),
}


class ConsentStatus(str, enum.Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    DECLINED = "DECLINED"
    EXPIRED = "EXPIRED"


TERMINAL_CONSENT_STATUSES: frozenset[ConsentStatus] = frozenset(
    {ConsentStatus.APPROVED, ConsentStatus.DECLINED, ConsentStatus.EXPIRED}
)


class AuditAction(str, enum.Enum):
    MATCHED = "MATCHED"
    INVITE = "INVITE"
    APPROVE = "APPROVE"
    DECLINE = "DECLINE"
    MERGE = "MERGE"
    UNMERGE = "UNMERGE"
    COST_RECALCULATED = "COST_RECALCULATED"


class CostMode(str, enum.Enum):
    EQUAL = "EQUAL"
    PROPORTIONAL_DISTANCE = "PROPORTIONAL_DISTANCE"


class WaypointType(str, enum.Enum):
    PICKUP = "PICKUP"
    DROP = "DROP"
