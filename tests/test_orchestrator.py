"""
End-to-end carpool flows through ``CarpoolOrchestrator``.

invite -> respond -> merge (with cost split) -> unmerge, against a
per-test SQLite database.
"""

from datetime import timedelta

import pytest

from carpool.domain.entities import InvalidStateTransition
from carpool.domain.enums import (
    AuditAction,
    BookingStatus,
    ConsentStatus,
    CostMode,
    GroupStatus,
)
from carpool.domain.errors import (
    ConflictError,
    InvalidStateError,
    InviteExpiredError,
    NotFoundError,
    ValidationFailedError,
)
from carpool.infrastructure.repositories import BookingRepository
from tests.conftest import BASE_TIME, add_booking, add_param_set, seed_approved_group


async def _booking(session_factory, booking_id):
    async with session_factory() as session:
        return await BookingRepository(session).get_by_id(booking_id)


def _fixed(moment):
    return lambda: moment


# ── Invites ───────────────────────────────────────────────────────────


class TestInvite:
    @pytest.mark.asyncio
    async def test_first_invite_creates_active_group(self, make_orchestrator, session_factory):
        orchestrator = make_orchestrator(clock=_fixed(BASE_TIME))
        host = await add_booking(session_factory)
        joiner = await add_booking(session_factory, requester_id="user-2")

        invite = await orchestrator.invite(host, joiner, "user-1")

        assert invite.id is not None
        assert invite.consent_status == ConsentStatus.PENDING
        assert invite.expires_at == BASE_TIME + timedelta(minutes=60)
        assert (invite.host_booking_id, invite.joiner_booking_id) == (host, joiner)

        group = await orchestrator.get_group(invite.carpool_group_id)
        assert group.status == GroupStatus.ACTIVE
        assert group.host_booking_id == host
        assert group.created_by == "user-1"

    @pytest.mark.asyncio
    async def test_later_invites_reuse_the_active_group(self, orchestrator, session_factory):
        host = await add_booking(session_factory)
        first = await add_booking(session_factory, requester_id="user-2")
        second = await add_booking(session_factory, requester_id="user-3")

        a = await orchestrator.invite(host, first, "user-1")
        b = await orchestrator.invite(host, second, "user-1")

        assert a.carpool_group_id == b.carpool_group_id

    @pytest.mark.asyncio
    async def test_explicit_and_configured_expiry(self, make_orchestrator, session_factory):
        orchestrator = make_orchestrator(clock=_fixed(BASE_TIME))
        host = await add_booking(session_factory)
        j1 = await add_booking(session_factory)
        j2 = await add_booking(session_factory)

        explicit = await orchestrator.invite(host, j1, "user-1", expires_in_minutes=15)
        assert explicit.expires_at == BASE_TIME + timedelta(minutes=15)

        await add_param_set(session_factory, 1, {"DEFAULT_INVITE_EXPIRY_MINUTES": "90"})
        configured = await orchestrator.invite(host, j2, "user-1")
        assert configured.expires_at == BASE_TIME + timedelta(minutes=90)

    @pytest.mark.asyncio
    async def test_invite_is_audited(self, orchestrator, session_factory):
        host = await add_booking(session_factory)
        joiner = await add_booking(session_factory)

        invite = await orchestrator.invite(host, joiner, "user-1")

        (entry,) = await orchestrator.get_audit_logs(invite.carpool_group_id)
        assert entry.action_type == AuditAction.INVITE
        assert entry.actor_id == "user-1"
        assert (entry.host_booking_id, entry.joiner_booking_id) == (host, joiner)
        assert entry.new_value["invite_id"] == invite.id
        assert "expires_at" in entry.new_value

    @pytest.mark.asyncio
    async def test_self_invite_is_rejected(self, orchestrator, session_factory):
        host = await add_booking(session_factory)
        with pytest.raises(ValidationFailedError, match="cannot invite itself"):
            await orchestrator.invite(host, host, "user-1")

    @pytest.mark.asyncio
    async def test_non_positive_expiry_is_rejected(self, orchestrator, session_factory):
        host = await add_booking(session_factory)
        joiner = await add_booking(session_factory)
        with pytest.raises(ValidationFailedError):
            await orchestrator.invite(host, joiner, "user-1", expires_in_minutes=0)

    @pytest.mark.asyncio
    async def test_unknown_bookings(self, orchestrator, session_factory):
        booking = await add_booking(session_factory)

        with pytest.raises(NotFoundError, match="Host booking with ID 999"):
            await orchestrator.invite(999, booking, "user-1")
        with pytest.raises(NotFoundError, match="Joiner booking with ID 998"):
            await orchestrator.invite(booking, 998, "user-1")

    @pytest.mark.asyncio
    async def test_merged_bookings_cannot_be_invited(self, orchestrator, session_factory):
        free = await add_booking(session_factory)
        merged = await add_booking(session_factory, status=BookingStatus.MERGED)

        with pytest.raises(InvalidStateError, match="Host booking is already merged"):
            await orchestrator.invite(merged, free, "user-1")
        with pytest.raises(InvalidStateError, match="Joiner booking is already merged"):
            await orchestrator.invite(free, merged, "user-1")

    @pytest.mark.asyncio
    async def test_open_invite_for_same_joiner_conflicts(self, orchestrator, session_factory):
        host = await add_booking(session_factory)
        joiner = await add_booking(session_factory)
        await orchestrator.invite(host, joiner, "user-1")

        with pytest.raises(ConflictError, match="already has an open invite"):
            await orchestrator.invite(host, joiner, "user-1")

    @pytest.mark.asyncio
    async def test_second_active_group_for_host_is_refused_by_the_database(
        self, orchestrator, session_factory, monkeypatch
    ):
        host = await add_booking(session_factory)
        first = await add_booking(session_factory)
        second = await add_booking(session_factory)
        invite = await orchestrator.invite(host, first, "user-1")

        async def not_seen_yet(host_booking_id):
            return None

        # another request created the group after this one looked
        monkeypatch.setattr(orchestrator.uow.groups, "get_active_for_host", not_seen_yet)
        with pytest.raises(ConflictError, match="recorded at the same time"):
            await orchestrator.invite(host, second, "user-1")
        monkeypatch.undo()

        retried = await orchestrator.invite(host, second, "user-1")
        assert retried.carpool_group_id == invite.carpool_group_id

    @pytest.mark.asyncio
    async def test_second_open_invite_is_refused_by_the_database(
        self, orchestrator, session_factory, monkeypatch
    ):
        host = await add_booking(session_factory)
        joiner = await add_booking(session_factory)
        invite = await orchestrator.invite(host, joiner, "user-1")

        async def not_seen_yet(group_id, joiner_booking_id):
            return None

        monkeypatch.setattr(orchestrator.uow.invites, "find_open_for_joiner", not_seen_yet)
        with pytest.raises(ConflictError):
            await orchestrator.invite(host, joiner, "user-1")

        invites = await orchestrator.uow.invites.list_for_group(invite.carpool_group_id)
        assert [i.id for i in invites] == [invite.id]

    @pytest.mark.asyncio
    async def test_declined_joiner_may_be_invited_again(self, orchestrator, session_factory):
        host = await add_booking(session_factory)
        joiner = await add_booking(session_factory)
        first = await orchestrator.invite(host, joiner, "user-1")
        await orchestrator.respond_to_invite(first.id, ConsentStatus.DECLINED, "user-2")

        second = await orchestrator.invite(host, joiner, "user-1")

        assert second.id != first.id
        assert second.consent_status == ConsentStatus.PENDING


# ── Responses ─────────────────────────────────────────────────────────


class TestRespondToInvite:
    @pytest.mark.asyncio
    async def test_approve(self, make_orchestrator, session_factory):
        answered_at = BASE_TIME + timedelta(minutes=5)
        orchestrator = make_orchestrator(clock=_fixed(BASE_TIME))
        host = await add_booking(session_factory)
        joiner = await add_booking(session_factory)
        invite = await orchestrator.invite(host, joiner, "user-1")

        responder = make_orchestrator(clock=_fixed(answered_at))
        updated = await responder.respond_to_invite(
            invite.id, ConsentStatus.APPROVED, "user-2"
        )

        assert updated.consent_status == ConsentStatus.APPROVED
        assert updated.responded_at == answered_at
        assert updated.updated_by == "user-2"

        latest = (await responder.get_audit_logs(invite.carpool_group_id))[0]
        assert latest.action_type == AuditAction.APPROVE
        assert latest.old_value == {"consent_status": "PENDING"}
        assert latest.new_value == {"consent_status": "APPROVED"}

    @pytest.mark.asyncio
    async def test_decline_accepts_plain_strings(self, orchestrator, session_factory):
        host = await add_booking(session_factory)
        joiner = await add_booking(session_factory)
        invite = await orchestrator.invite(host, joiner, "user-1")

        updated = await orchestrator.respond_to_invite(invite.id, "DECLINED", "user-2")

        assert updated.consent_status == ConsentStatus.DECLINED
        latest = (await orchestrator.get_audit_logs(invite.carpool_group_id))[0]
        assert latest.action_type == AuditAction.DECLINE

    @pytest.mark.asyncio
    async def test_unknown_invite(self, orchestrator):
        with pytest.raises(NotFoundError, match="Invite with ID 41 not found"):
            await orchestrator.respond_to_invite(41, ConsentStatus.APPROVED, "user-2")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("decision", ["MAYBE", ConsentStatus.PENDING, ConsentStatus.EXPIRED])
    async def test_bad_decision(self, orchestrator, session_factory, decision):
        host = await add_booking(session_factory)
        joiner = await add_booking(session_factory)
        invite = await orchestrator.invite(host, joiner, "user-1")

        with pytest.raises(ValidationFailedError, match="APPROVED or DECLINED"):
            await orchestrator.respond_to_invite(invite.id, decision, "user-2")

    @pytest.mark.asyncio
    async def test_answered_invite_cannot_change(self, orchestrator, session_factory):
        host = await add_booking(session_factory)
        joiner = await add_booking(session_factory)
        invite = await orchestrator.invite(host, joiner, "user-1")
        await orchestrator.respond_to_invite(invite.id, ConsentStatus.APPROVED, "user-2")

        with pytest.raises(InvalidStateError, match="already been approved"):
            await orchestrator.respond_to_invite(invite.id, ConsentStatus.DECLINED, "user-2")

    @pytest.mark.asyncio
    async def test_expired_invite_is_marked_expired(self, make_orchestrator, session_factory):
        creator = make_orchestrator(clock=_fixed(BASE_TIME))
        host = await add_booking(session_factory)
        joiner = await add_booking(session_factory)
        invite = await creator.invite(host, joiner, "user-1")

        late = make_orchestrator(clock=_fixed(BASE_TIME + timedelta(minutes=61)))
        with pytest.raises(InviteExpiredError, match="Invite has expired"):
            await late.respond_to_invite(invite.id, ConsentStatus.APPROVED, "user-2")

        stored = await late.uow.invites.get_by_id(invite.id)
        assert stored.consent_status == ConsentStatus.EXPIRED
        assert stored.responded_at is None

        with pytest.raises(InvalidStateError, match="already been expired"):
            await late.respond_to_invite(invite.id, ConsentStatus.APPROVED, "user-2")

        # expiry is not an answer, so only the invite itself is audited
        entries = await late.get_audit_logs(invite.carpool_group_id)
        assert [e.action_type for e in entries] == [AuditAction.INVITE]


# ── Merge ─────────────────────────────────────────────────────────────


class TestMerge:
    @pytest.mark.asyncio
    async def test_merge_with_equal_split(self, orchestrator, session_factory):
        host, joiner, group_id = await seed_approved_group(orchestrator, session_factory)

        group = await orchestrator.merge(group_id, CostMode.EQUAL, "user-1")

        assert group.status == GroupStatus.MERGED
        assert group.member_booking_ids == [joiner]
        assert group.pre_merge_distance == 45
        assert group.post_merge_distance == 40
        assert group.detour_percentage == 0
        assert group.combined_route.total_duration == 70
        assert [
            (w.type.value, w.booking_id) for w in group.combined_route.waypoints
        ] == [("PICKUP", host), ("PICKUP", joiner), ("DROP", host), ("DROP", joiner)]

        cost = group.shared_cost
        assert group.cost_mode == CostMode.EQUAL
        assert cost.total_cost == pytest.approx(378_333.33, abs=0.01)
        assert [row.booking_id for row in cost.breakdown] == [host, joiner]
        assert [row.cost_share for row in cost.breakdown] == pytest.approx(
            [189_166.67, 189_166.67], abs=0.01
        )

        assert (await _booking(session_factory, host)).status == BookingStatus.MERGED
        merged_joiner = await _booking(session_factory, joiner)
        assert merged_joiner.status == BookingStatus.MERGED
        assert merged_joiner.carpool_group_id == group_id

    @pytest.mark.asyncio
    async def test_merge_with_proportional_split(self, orchestrator, session_factory):
        host, joiner, group_id = await seed_approved_group(orchestrator, session_factory)

        group = await orchestrator.merge(
            group_id, CostMode.PROPORTIONAL_DISTANCE, "user-1"
        )

        shares = {row.booking_id: row for row in group.shared_cost.breakdown}
        total = group.shared_cost.total_cost
        assert shares[host].cost_share == pytest.approx(total * 25 / 45)
        assert shares[joiner].cost_share == pytest.approx(total * 20 / 45)
        assert shares[host].percentage + shares[joiner].percentage == pytest.approx(100)

    @pytest.mark.asyncio
    async def test_merge_audit_trail(self, orchestrator, session_factory):
        host, joiner, group_id = await seed_approved_group(orchestrator, session_factory)

        await orchestrator.merge(group_id, CostMode.EQUAL, "user-1")

        entries = await orchestrator.get_audit_logs(group_id)
        assert [e.action_type for e in entries] == [
            AuditAction.COST_RECALCULATED,
            AuditAction.MERGE,
            AuditAction.APPROVE,
            AuditAction.INVITE,
        ]
        cost_entry, merge_entry = entries[0], entries[1]
        assert cost_entry.metadata == {"cost_mode": "EQUAL"}
        assert cost_entry.old_value is None
        assert merge_entry.new_value["merged_bookings"] == [joiner]
        assert merge_entry.new_value["post_merge_distance"] == 40
        assert len(merge_entry.new_value["combined_route"]["waypoints"]) == 4

    @pytest.mark.asyncio
    async def test_unknown_cost_mode(self, orchestrator, session_factory):
        *_, group_id = await seed_approved_group(orchestrator, session_factory)
        with pytest.raises(ValidationFailedError, match="Unknown cost mode"):
            await orchestrator.merge(group_id, "BY_WEIGHT", "user-1")
        assert (await orchestrator.get_group(group_id)).status == GroupStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_unknown_group(self, orchestrator):
        with pytest.raises(NotFoundError, match="Carpool group not found"):
            await orchestrator.merge(12345, CostMode.EQUAL, "user-1")

    @pytest.mark.asyncio
    async def test_pending_invite_blocks_merge(self, orchestrator, session_factory):
        host, _, group_id = await seed_approved_group(orchestrator, session_factory)
        late_joiner = await add_booking(session_factory, est_km=5)
        await orchestrator.invite(host, late_joiner, "user-1")

        with pytest.raises(ValidationFailedError, match="still pending approval"):
            await orchestrator.merge(group_id, CostMode.EQUAL, "user-1")

    @pytest.mark.asyncio
    async def test_declined_invite_blocks_merge(self, orchestrator, session_factory):
        host, _, group_id = await seed_approved_group(orchestrator, session_factory)
        other = await add_booking(session_factory)
        invite = await orchestrator.invite(host, other, "user-1")
        await orchestrator.respond_to_invite(invite.id, ConsentStatus.DECLINED, "user-3")

        with pytest.raises(ValidationFailedError, match="have been declined"):
            await orchestrator.merge(group_id, CostMode.EQUAL, "user-1")

    @pytest.mark.asyncio
    async def test_detour_over_limit_blocks_merge(self, orchestrator, session_factory):
        *_, group_id = await seed_approved_group(
            orchestrator, session_factory, host_km=5, joiner_km=5
        )

        with pytest.raises(ValidationFailedError) as excinfo:
            await orchestrator.merge(group_id, CostMode.EQUAL, "user-1")

        assert excinfo.value.message == (
            "Detour percentage (300.00%) exceeds maximum allowed (15%)"
        )
        assert (await orchestrator.get_group(group_id)).status == GroupStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_configured_detour_limit(self, orchestrator, session_factory):
        await add_param_set(session_factory, 3, {"MAX_DETOUR_PERCENTAGE": "400"})
        *_, group_id = await seed_approved_group(
            orchestrator, session_factory, host_km=5, joiner_km=5
        )

        group = await orchestrator.merge(group_id, CostMode.EQUAL, "user-1")

        assert group.detour_percentage == pytest.approx(300)

    @pytest.mark.asyncio
    async def test_merged_group_cannot_merge_again(self, orchestrator, session_factory):
        *_, group_id = await seed_approved_group(orchestrator, session_factory)
        await orchestrator.merge(group_id, CostMode.EQUAL, "user-1")

        with pytest.raises(InvalidStateTransition, match="from Merged to Merged"):
            await orchestrator.merge(group_id, CostMode.EQUAL, "user-1")


# ── Unmerge ───────────────────────────────────────────────────────────


class TestUnmerge:
    @pytest.mark.asyncio
    async def test_unmerge_restores_bookings(self, orchestrator, session_factory):
        host, joiner, group_id = await seed_approved_group(orchestrator, session_factory)
        await orchestrator.merge(group_id, CostMode.EQUAL, "user-1")

        group = await orchestrator.unmerge(group_id, "admin")

        assert group.status == GroupStatus.UNMERGED
        assert group.member_booking_ids == []
        for booking_id in (host, joiner):
            booking = await _booking(session_factory, booking_id)
            assert booking.status == BookingStatus.SUBMITTED
            assert booking.carpool_group_id is None

        latest = (await orchestrator.get_audit_logs(group_id))[0]
        assert latest.action_type == AuditAction.UNMERGE
        assert latest.actor_id == "admin"
        assert latest.old_value == {"status": "Merged"}
        assert latest.new_value == {
            "status": "Unmerged",
            "affected_bookings": [host, joiner],
        }

    @pytest.mark.asyncio
    async def test_unmerged_bookings_are_candidates_again(self, orchestrator, session_factory):
        host, joiner, group_id = await seed_approved_group(orchestrator, session_factory)
        await orchestrator.merge(group_id, CostMode.EQUAL, "user-1")
        await orchestrator.unmerge(group_id, "admin")

        candidates = await orchestrator.find_candidates(host)

        assert joiner in [c.booking_id for c in candidates]

    @pytest.mark.asyncio
    async def test_active_group_can_be_dissolved(self, orchestrator, session_factory):
        host, _, group_id = await seed_approved_group(orchestrator, session_factory)

        group = await orchestrator.unmerge(group_id, "user-1")

        assert group.status == GroupStatus.UNMERGED
        assert (await _booking(session_factory, host)).status == BookingStatus.SUBMITTED

    @pytest.mark.asyncio
    async def test_second_unmerge_is_invalid(self, orchestrator, session_factory):
        *_, group_id = await seed_approved_group(orchestrator, session_factory)
        await orchestrator.merge(group_id, CostMode.EQUAL, "user-1")
        await orchestrator.unmerge(group_id, "admin")

        with pytest.raises(InvalidStateError):
            await orchestrator.unmerge(group_id, "admin")
        with pytest.raises(InvalidStateError):
            await orchestrator.merge(group_id, CostMode.EQUAL, "admin")

    @pytest.mark.asyncio
    async def test_unknown_group(self, orchestrator):
        with pytest.raises(NotFoundError):
            await orchestrator.unmerge(777, "admin")


class TestReads:
    @pytest.mark.asyncio
    async def test_get_group_not_found(self, orchestrator):
        with pytest.raises(NotFoundError, match="Carpool group not found"):
            await orchestrator.get_group(1)

    @pytest.mark.asyncio
    async def test_audit_logs_of_unknown_group_are_empty(self, orchestrator):
        assert await orchestrator.get_audit_logs(1) == []
