"""
Tests for sardis_multisig.lifecycle.

Tests cover:
- Activity recording
- Inactivity flagging and idempotence
- Quorum-safe removal and deferral
- Targeted removal with a recorded reason
- Signer health summaries
"""
from __future__ import annotations

import pytest

from sardis_multisig.exceptions import MemberInactiveError, MultisigNotFoundError, NotAMemberError


async def _touch(lifecycle, multisig_id, keys):
    for key in keys:
        assert await lifecycle.record_activity(multisig_id, key)


async def _members(engine, multisig_id):
    return {m.public_key: m for m in await engine.list_members(multisig_id)}


class TestRecordActivity:
    """Tests for record_activity."""

    @pytest.mark.asyncio
    async def test_updates_last_activity(self, make_multisig, lifecycle, engine, clock):
        multisig = await make_multisig()
        clock.advance(hours=3)

        assert await lifecycle.record_activity(multisig.id, "A") is True

        assert (await _members(engine, multisig.id))["A"].last_activity_at == clock.now

    @pytest.mark.asyncio
    async def test_unknown_member(self, make_multisig, lifecycle):
        multisig = await make_multisig()
        assert await lifecycle.record_activity(multisig.id, "Z") is False

    @pytest.mark.asyncio
    async def test_activity_clears_flag(self, make_multisig, lifecycle, engine, clock):
        multisig = await make_multisig(keys=("A", "B", "C", "D"))
        clock.advance(hours=30)
        await _touch(lifecycle, multisig.id, "ABC")
        await lifecycle.scan_for_inactivity()
        assert (await _members(engine, multisig.id))["D"].is_flagged_inactive

        await lifecycle.record_activity(multisig.id, "D")

        member = (await _members(engine, multisig.id))["D"]
        assert member.inactive_since is None
        assert not member.is_flagged_inactive

        clock.advance(hours=20)
        report = await lifecycle.apply_removals(multisig.id)
        assert report.removed_count == 0


class TestScanForInactivity:
    """Tests for scan_for_inactivity."""

    @pytest.mark.asyncio
    async def test_flags_silent_members_only(self, make_multisig, lifecycle, clock):
        multisig = await make_multisig(keys=("A", "B", "C", "D"))
        clock.advance(hours=30)
        await _touch(lifecycle, multisig.id, "ABC")

        flagged = await lifecycle.scan_for_inactivity()

        assert [m.public_key for m in flagged] == ["D"]
        assert flagged[0].newly_flagged is True
        assert flagged[0].inactive_since == clock.now
        assert flagged[0].hours_since_activity == pytest.approx(30.0)

    @pytest.mark.asyncio
    async def test_below_threshold_not_flagged(self, make_multisig, lifecycle, clock):
        await make_multisig()
        clock.advance(hours=23, minutes=59)
        assert await lifecycle.scan_for_inactivity() == []

    @pytest.mark.asyncio
    async def test_exact_threshold_is_flagged(self, make_multisig, lifecycle, clock):
        await make_multisig()
        clock.advance(hours=24)
        assert len(await lifecycle.scan_for_inactivity()) == 3

    @pytest.mark.asyncio
    async def test_idempotent(self, make_multisig, lifecycle, clock):
        multisig = await make_multisig(keys=("A", "B", "C", "D"))
        clock.advance(hours=30)
        await _touch(lifecycle, multisig.id, "ABC")

        first = await lifecycle.scan_for_inactivity()
        second = await lifecycle.scan_for_inactivity()

        assert [m.member_id for m in first] == [m.member_id for m in second]
        assert second[0].newly_flagged is False
        assert second[0].inactive_since == first[0].inactive_since

    @pytest.mark.asyncio
    async def test_scan_never_removes(self, make_multisig, lifecycle, engine, clock):
        multisig = await make_multisig()
        clock.advance(hours=500)

        await lifecycle.scan_for_inactivity()

        assert all(m.is_active for m in await engine.list_members(multisig.id))

    @pytest.mark.asyncio
    async def test_scoped_to_one_multisig(self, make_multisig, lifecycle, clock):
        first = await make_multisig()
        await make_multisig()
        clock.advance(hours=30)

        flagged = await lifecycle.scan_for_inactivity(multisig_id=first.id)

        assert {m.multisig_id for m in flagged} == {first.id}

    @pytest.mark.asyncio
    async def test_zero_threshold_override_is_honored(self, make_multisig, lifecycle, clock):
        """An explicit 0h threshold flags everyone silent since now."""
        multisig = await make_multisig(threshold=1, keys=("A", "B", "C"))

        flagged = await lifecycle.scan_for_inactivity(now=clock.now, inactivity_threshold_hours=0)
        assert sorted(m.public_key for m in flagged) == ["A", "B", "C"]

        candidates = await lifecycle.removal_candidates(
            multisig.id, removal_threshold_hours=0, now=clock.now
        )
        assert sorted(m.public_key for m in candidates) == ["A", "B", "C"]


class TestApplyRemovals:
    """Tests for removal_candidates and apply_removals."""

    @pytest.mark.asyncio
    async def test_inactivity_scenario(self, make_multisig, lifecycle, engine, clock):
        """D silent 30h is flagged but kept; at 50h D is removed."""
        multisig = await make_multisig(threshold=2, keys=("A", "B", "C", "D"))

        clock.advance(hours=30)
        await _touch(lifecycle, multisig.id, "ABC")
        flagged = await lifecycle.scan_for_inactivity()
        assert [m.public_key for m in flagged] == ["D"]

        report = await lifecycle.apply_removals(multisig.id)
        assert report.removed_count == 0
        assert report.deferred == []
        assert (await _members(engine, multisig.id))["D"].is_active

        clock.advance(hours=20)
        await _touch(lifecycle, multisig.id, "ABC")
        report = await lifecycle.apply_removals(multisig.id)

        assert [m.public_key for m in report.removed] == ["D"]
        assert report.active_before == 4
        assert report.active_after == 3
        member = (await _members(engine, multisig.id))["D"]
        assert member.is_active is False
        assert member.removed_at == clock.now

    @pytest.mark.asyncio
    async def test_removal_deferred_to_preserve_quorum(self, make_multisig, lifecycle, engine, clock):
        multisig = await make_multisig(threshold=2, keys=("A", "B", "D"))
        clock.advance(hours=50)
        await _touch(lifecycle, multisig.id, "AB")
        await lifecycle.scan_for_inactivity(now=clock.now)

        report = await lifecycle.apply_removals(multisig.id)

        assert report.max_removable == 0
        assert report.removed == []
        assert [d.public_key for d in report.deferred] == ["D"]
        assert report.deferred[0].reason == "REMOVAL_WOULD_BREAK_QUORUM"
        assert (await _members(engine, multisig.id))["D"].is_active

    @pytest.mark.asyncio
    async def test_removals_capped_at_threshold_plus_one(self, make_multisig, lifecycle, engine, clock):
        multisig = await make_multisig(threshold=2, keys=("A", "B", "C", "D", "E", "F"))
        clock.advance(hours=60)
        await lifecycle.scan_for_inactivity()

        report = await lifecycle.apply_removals(multisig.id)

        assert report.max_removable == 3
        assert report.removed_count == 3
        assert len(report.deferred) == 3
        active = await engine.list_members(multisig.id, active_only=True)
        assert len(active) == multisig.threshold + 1

    @pytest.mark.asyncio
    async def test_unflagged_members_not_removed(self, make_multisig, lifecycle, engine, clock):
        multisig = await make_multisig(threshold=1, keys=("A", "B", "C", "D"))
        clock.advance(hours=60)

        report = await lifecycle.apply_removals(multisig.id)

        assert report.removed == []
        assert all(m.is_active for m in await engine.list_members(multisig.id))

    @pytest.mark.asyncio
    async def test_candidates_oldest_first(self, make_multisig, lifecycle, clock):
        multisig = await make_multisig(threshold=1, keys=("A", "B", "C", "D"))
        clock.advance(hours=1)
        await _touch(lifecycle, multisig.id, "C")
        clock.advance(hours=1)
        await _touch(lifecycle, multisig.id, "B")
        clock.advance(hours=60)
        await _touch(lifecycle, multisig.id, "A")
        await lifecycle.scan_for_inactivity()

        candidates = await lifecycle.removal_candidates(multisig.id)

        assert [m.public_key for m in candidates] == ["D", "C", "B"]

        report = await lifecycle.apply_removals(multisig.id)
        assert report.max_removable == 2
        assert [m.public_key for m in report.removed] == ["D", "C"]
        assert [d.public_key for d in report.deferred] == ["B"]

    @pytest.mark.asyncio
    async def test_idempotent_at_same_instant(self, make_multisig, lifecycle, engine, clock):
        multisig = await make_multisig(threshold=2, keys=("A", "B", "C", "D", "E"))
        clock.advance(hours=50)
        await lifecycle.scan_for_inactivity()

        first = await lifecycle.apply_removals(multisig.id)
        active_after_first = {m.id for m in await engine.list_members(multisig.id, active_only=True)}
        second = await lifecycle.apply_removals(multisig.id)
        active_after_second = {m.id for m in await engine.list_members(multisig.id, active_only=True)}

        assert first.removed_count == 2
        assert second.removed_count == 0
        assert active_after_first == active_after_second

    @pytest.mark.asyncio
    async def test_unknown_multisig(self, lifecycle):
        with pytest.raises(MultisigNotFoundError):
            await lifecycle.apply_removals("msig_missing")

    @pytest.mark.asyncio
    async def test_removal_history(self, make_multisig, lifecycle, clock):
        multisig = await make_multisig(threshold=1, keys=("A", "B", "C", "D"))
        clock.advance(hours=50)
        await _touch(lifecycle, multisig.id, "AB")
        await lifecycle.scan_for_inactivity()
        await lifecycle.apply_removals(multisig.id)

        history = await lifecycle.get_removal_history(multisig.id)

        assert sorted(m.public_key for m in history) == ["C", "D"]
        assert all(m.removed_at == clock.now for m in history)
        assert all(m.removal_reason == "Inactive for 48+ hours" for m in history)
        assert len(await lifecycle.get_removal_history(multisig.id, limit=1)) == 1


class TestRemoveMember:
    """Tests for targeted remove_member."""

    async def _flag_d(self, make_multisig, lifecycle, clock, keys=("A", "B", "C", "D")):
        multisig = await make_multisig(threshold=2, keys=keys)
        clock.advance(hours=48)
        await _touch(lifecycle, multisig.id, [k for k in keys if k != "D"])
        await lifecycle.scan_for_inactivity()
        return multisig

    @pytest.mark.asyncio
    async def test_removes_eligible_signer(self, make_multisig, lifecycle, engine, clock):
        multisig = await self._flag_d(make_multisig, lifecycle, clock)

        report = await lifecycle.remove_member(multisig.id, "D", reason="lost device")

        assert [m.public_key for m in report.removed] == ["D"]
        assert report.deferred == []
        assert report.active_after == 3
        member = (await _members(engine, multisig.id))["D"]
        assert member.is_active is False
        assert member.removed_at == clock.now
        assert member.removal_reason == "lost device"

        history = await lifecycle.get_removal_history(multisig.id)
        assert [(m.public_key, m.removal_reason) for m in history] == [("D", "lost device")]

    @pytest.mark.asyncio
    async def test_default_reason(self, make_multisig, lifecycle, clock):
        multisig = await self._flag_d(make_multisig, lifecycle, clock)

        report = await lifecycle.remove_member(multisig.id, "D")

        assert report.removed[0].removal_reason == "Inactive for 48+ hours"
        assert report.removed[0].to_dict()["removal_reason"] == "Inactive for 48+ hours"

    @pytest.mark.asyncio
    async def test_unflagged_signer_not_removed(self, make_multisig, lifecycle, engine, clock):
        multisig = await self._flag_d(make_multisig, lifecycle, clock)

        report = await lifecycle.remove_member(multisig.id, "A", reason="asked to leave")

        assert report.removed == []
        assert [(d.public_key, d.reason) for d in report.deferred] == [
            ("A", "NOT_ELIGIBLE_FOR_REMOVAL")
        ]
        assert (await _members(engine, multisig.id))["A"].is_active

    @pytest.mark.asyncio
    async def test_flagged_but_below_removal_threshold(self, make_multisig, lifecycle, engine):
        multisig = await make_multisig(threshold=2, keys=("A", "B", "C", "D"))
        await lifecycle.scan_for_inactivity(inactivity_threshold_hours=0)

        report = await lifecycle.remove_member(multisig.id, "D")

        assert report.deferred[0].reason == "NOT_ELIGIBLE_FOR_REMOVAL"
        assert (await _members(engine, multisig.id))["D"].is_active

    @pytest.mark.asyncio
    async def test_refused_when_quorum_at_risk(self, make_multisig, lifecycle, engine, clock):
        multisig = await self._flag_d(make_multisig, lifecycle, clock, keys=("A", "B", "D"))

        report = await lifecycle.remove_member(multisig.id, "D")

        assert report.max_removable == 0
        assert report.removed == []
        assert report.deferred[0].reason == "REMOVAL_WOULD_BREAK_QUORUM"
        assert (await _members(engine, multisig.id))["D"].is_active

    @pytest.mark.asyncio
    async def test_unknown_and_removed_members(self, make_multisig, lifecycle, clock):
        multisig = await self._flag_d(make_multisig, lifecycle, clock)
        await lifecycle.remove_member(multisig.id, "D")

        with pytest.raises(MemberInactiveError):
            await lifecycle.remove_member(multisig.id, "D")
        with pytest.raises(NotAMemberError):
            await lifecycle.remove_member(multisig.id, "Z")
        with pytest.raises(MultisigNotFoundError):
            await lifecycle.remove_member("msig_missing", "D")


class TestSignerHealth:
    """Tests for get_signer_health and can_transaction_proceed."""

    @pytest.mark.asyncio
    async def test_healthy(self, make_multisig, lifecycle):
        multisig = await make_multisig(threshold=2, keys=("A", "B", "C", "D"))

        health = await lifecycle.get_signer_health(multisig.id)

        assert health.is_healthy
        assert health.active_members == 4
        assert health.max_removable == 1
        assert health.warnings == []

    @pytest.mark.asyncio
    async def test_flagged_and_deferred_warnings(self, make_multisig, lifecycle, clock):
        multisig = await make_multisig(threshold=2, keys=("A", "B", "C"))
        clock.advance(hours=50)
        await lifecycle.scan_for_inactivity()

        health = await lifecycle.get_signer_health(multisig.id)

        assert health.is_healthy
        assert health.flagged_inactive == 3
        assert health.removal_eligible == 3
        assert health.max_removable == 0
        assert "3 members are inactive and may be removed" in health.warnings
        assert "3 removal(s) deferred to preserve quorum" in health.warnings

    @pytest.mark.asyncio
    async def test_minimum_threshold_warning(self, make_multisig, lifecycle):
        multisig = await make_multisig(threshold=3)

        health = await lifecycle.get_signer_health(multisig.id)

        assert "Multisig is at minimum threshold. Consider adding more members" in health.warnings

    @pytest.mark.asyncio
    async def test_can_transaction_proceed(self, make_multisig, lifecycle):
        multisig = await make_multisig(threshold=2)
        assert await lifecycle.can_transaction_proceed(multisig.id) == (True, "OK")
