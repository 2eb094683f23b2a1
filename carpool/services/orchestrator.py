"""
Carpool Orchestrator -- the entry point for every carpool operation.

Flow
----
find candidates -> invite -> joiner responds -> merge (+ cost split)
                                              -> unmerge

The orchestrator owns group and invite creation and the consent answer;
route synthesis and booking mutations belong to the merge engine and the
shared-cost snapshot to the cost allocator.  Merge and unmerge run under
the group's lock from ``GroupLockFactory``.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Optional

from sqlalchemy.exc import IntegrityError

from carpool.domain.clock import utc_now
from carpool.domain.entities import (
    AuditLogEntry,
    CarpoolCandidate,
    CarpoolGroup,
    CarpoolInvite,
    DraftTrip,
)
from carpool.domain.enums import AuditAction, BookingStatus, ConsentStatus, CostMode
from carpool.domain.errors import (
    CarpoolError,
    ConflictError,
    InternalError,
    InvalidStateError,
    InviteExpiredError,
    NotFoundError,
    ValidationFailedError,
)
from carpool.domain.routing import RouteDistanceStrategy
from carpool.infrastructure.locks import GroupLockFactory
from carpool.infrastructure.repositories import CarpoolUnitOfWork
from carpool.services.audit_log import AuditLog
from carpool.services.candidate_matcher import CandidateMatcher
from carpool.services.config_provider import ConfigProvider
from carpool.services.cost_allocator import CostAllocator
from carpool.services.merge_engine import MergeEngine
from carpool.services.route_estimator import RouteEstimator

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"

_DECISION_ACTIONS = {
    ConsentStatus.APPROVED: AuditAction.APPROVE,
    ConsentStatus.DECLINED: AuditAction.DECLINE,
}


class CarpoolOrchestrator:
    def __init__(
        self,
        uow: CarpoolUnitOfWork,
        config_provider: ConfigProvider,
        estimator: RouteEstimator,
        audit_log: AuditLog,
        locks: Optional[GroupLockFactory] = None,
        distance_strategy: Optional[RouteDistanceStrategy] = None,
        clock=utc_now,
    ):
        self.uow = uow
        self.config_provider = config_provider
        self.audit_log = audit_log
        self.locks = locks or GroupLockFactory()
        self.clock = clock
        self.matcher = CandidateMatcher(uow.bookings, config_provider, estimator)
        self.merge_engine = MergeEngine(
            uow, config_provider, audit_log, distance_strategy
        )
        self.cost_allocator = CostAllocator(uow, config_provider, audit_log)

    # ── Matching ──────────────────────────────────────────────────────

    async def find_candidates(
        self, host_booking_id: int, actor_id: str = SYSTEM_ACTOR
    ) -> list[CarpoolCandidate]:
        candidates = await self.matcher.find_candidates(host_booking_id)
        await self.audit_log.log_action(
            AuditLogEntry(
                action_type=AuditAction.MATCHED,
                actor_id=actor_id,
                host_booking_id=host_booking_id,
                metadata={"candidate_count": len(candidates)},
            )
        )
        return candidates

    async def find_candidates_for_draft(
        self,
        draft: DraftTrip,
        actor_id: str = SYSTEM_ACTOR,
        requester_id: Optional[str] = None,
    ) -> list[CarpoolCandidate]:
        candidates = await self.matcher.find_candidates_for_draft(
            draft, exclude_requester_id=requester_id
        )
        await self.audit_log.log_action(
            AuditLogEntry(
                action_type=AuditAction.MATCHED,
                actor_id=actor_id,
                metadata={
                    "candidate_count": len(candidates),
                    "is_pre_submit": True,
                },
            )
        )
        return candidates

    # ── Consent ───────────────────────────────────────────────────────

    async def invite(
        self,
        host_booking_id: int,
        joiner_booking_id: int,
        actor_id: str,
        expires_in_minutes: Optional[int] = None,
    ) -> CarpoolInvite:
        if host_booking_id == joiner_booking_id:
            raise ValidationFailedError("A booking cannot invite itself")
        if expires_in_minutes is not None and expires_in_minutes <= 0:
            raise ValidationFailedError("Invite expiry must be a positive number of minutes")

        host = await self.uow.bookings.get_by_id(host_booking_id)
        if host is None:
            raise NotFoundError(f"Host booking with ID {host_booking_id} not found")
        if host.status == BookingStatus.MERGED:
            raise InvalidStateError("Host booking is already merged")

        joiner = await self.uow.bookings.get_by_id(joiner_booking_id)
        if joiner is None:
            raise NotFoundError(f"Joiner booking with ID {joiner_booking_id} not found")
        if joiner.status == BookingStatus.MERGED:
            raise InvalidStateError("Joiner booking is already merged")

        if expires_in_minutes is None:
            config = await self.config_provider.get_config()
            expires_in_minutes = config.default_invite_expiry_minutes
        expires_at = self.clock() + timedelta(minutes=expires_in_minutes)

        try:
            async with self.uow.atomic() as uow:
                # invites for one host run one at a time
                await uow.bookings.get_by_id(host.id, for_update=True)
                group = await uow.groups.get_active_for_host(host.id)
                if group is None:
                    group = await uow.groups.create(host.id, actor_id)
                    logger.info("Created carpool group %s for host %s", group.id, host.id)

                if await uow.invites.find_open_for_joiner(group.id, joiner.id):
                    raise ConflictError(
                        "Joiner booking already has an open invite in this carpool group"
                    )

                invite = await uow.invites.create(
                    CarpoolInvite(
                        carpool_group_id=group.id,
                        host_booking_id=host.id,
                        joiner_booking_id=joiner.id,
                        expires_at=expires_at,
                        created_by=actor_id,
                    )
                )
        except CarpoolError:
            raise
        except IntegrityError as exc:
            logger.warning(
                "Concurrent invite %s -> %s lost the race", host.id, joiner.id
            )
            raise ConflictError(
                "Another invite for this host was recorded at the same time"
            ) from exc
        except Exception as exc:
            logger.exception("Creating invite %s -> %s failed", host.id, joiner.id)
            raise InternalError("Failed to create carpool invite") from exc

        await self.audit_log.log_action(
            AuditLogEntry(
                action_type=AuditAction.INVITE,
                actor_id=actor_id,
                carpool_group_id=invite.carpool_group_id,
                host_booking_id=host.id,
                joiner_booking_id=joiner.id,
                new_value={"invite_id": invite.id, "expires_at": invite.expires_at},
            )
        )
        return invite

    async def respond_to_invite(
        self, invite_id: int, decision: ConsentStatus, actor_id: str
    ) -> CarpoolInvite:
        invite = await self.uow.invites.get_by_id(invite_id)
        if invite is None:
            raise NotFoundError(f"Invite with ID {invite_id} not found")

        try:
            decision = ConsentStatus(decision)
        except ValueError:
            decision = None
        if decision not in _DECISION_ACTIONS:
            raise ValidationFailedError("Decision must be APPROVED or DECLINED")

        if invite.is_terminal:
            raise InvalidStateError(
                f"Invite has already been {invite.consent_status.value.lower()}"
            )

        now = self.clock()
        if invite.is_expired(now):
            async with self.uow.atomic() as uow:
                await uow.invites.update_consent(
                    invite_id, status=ConsentStatus.EXPIRED, actor_id=actor_id
                )
            raise InviteExpiredError("Invite has expired")

        async with self.uow.atomic() as uow:
            updated = await uow.invites.update_consent(
                invite_id, status=decision, actor_id=actor_id, responded_at=now
            )
            if updated is None:
                raise InvalidStateError("Invite has already been answered")

        await self.audit_log.log_action(
            AuditLogEntry(
                action_type=_DECISION_ACTIONS[decision],
                actor_id=actor_id,
                carpool_group_id=invite.carpool_group_id,
                host_booking_id=invite.host_booking_id,
                joiner_booking_id=invite.joiner_booking_id,
                old_value={"consent_status": invite.consent_status.value},
                new_value={"consent_status": decision.value},
            )
        )
        return updated

    # ── Merge / unmerge ───────────────────────────────────────────────

    async def merge(
        self, group_id: int, cost_mode: CostMode, actor_id: str
    ) -> CarpoolGroup:
        try:
            cost_mode = CostMode(cost_mode)
        except ValueError:
            raise ValidationFailedError(f"Unknown cost mode: {cost_mode}") from None

        async with self.locks.for_group(group_id):
            await self.merge_engine.merge(group_id, actor_id)
            await self.cost_allocator.allocate_cost(group_id, cost_mode, actor_id)
        return await self.get_group(group_id)

    async def unmerge(self, group_id: int, actor_id: str) -> CarpoolGroup:
        async with self.locks.for_group(group_id):
            return await self.merge_engine.unmerge(group_id, actor_id)

    # ── Reads ─────────────────────────────────────────────────────────

    async def get_group(self, group_id: int) -> CarpoolGroup:
        group = await self.uow.groups.get_by_id(group_id)
        if group is None:
            raise NotFoundError("Carpool group not found")
        return group

    async def get_audit_logs(self, group_id: int) -> list[AuditLogEntry]:
        return await self.audit_log.get_audit_logs(group_id)
