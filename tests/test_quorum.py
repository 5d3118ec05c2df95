"""
Tests for sardis_multisig.quorum.

Tests cover:
- Vote eligibility ordering
- Approval/rejection counting
- Time-lock arithmetic
- Quorum-safe removal bound
"""
from __future__ import annotations

from datetime import timedelta
from decimal import Decimal

import pytest

from sardis_multisig import quorum
from sardis_multisig.exceptions import (
    AlreadyVotedError,
    MemberInactiveError,
    ProposalNotPendingError,
)
from sardis_multisig.models import (
    Approval,
    ApprovalType,
    Member,
    Proposal,
    ProposalStatus,
)

from conftest import T0


def _proposal(status=ProposalStatus.PENDING) -> Proposal:
    return Proposal(
        id="prop_1",
        multisig_id="msig_1",
        transaction_index=1,
        proposer_key="A",
        from_account="wallet_a",
        to_account="wallet_b",
        amount=Decimal("10"),
        currency="USDC",
        status=status,
    )


def _member(member_id="mbr_a", key="A", active=True) -> Member:
    return Member(id=member_id, multisig_id="msig_1", public_key=key, is_active=active)


def _vote(member_id="mbr_a", vote=ApprovalType.APPROVE) -> Approval:
    return Approval(
        id=f"vote_{member_id}",
        proposal_id="prop_1",
        member_id=member_id,
        member_key=member_id,
        type=vote,
    )


class TestCanApprove:
    """Tests for can_approve."""

    def test_fresh_member_on_pending_proposal(self):
        assert quorum.can_approve(_proposal(), _member(), []) is True

    def test_already_voted(self):
        with pytest.raises(AlreadyVotedError):
            quorum.can_approve(_proposal(), _member(), [_vote("mbr_a")])

    def test_reject_vote_also_counts_as_voted(self):
        with pytest.raises(AlreadyVotedError):
            quorum.can_approve(_proposal(), _member(), [_vote("mbr_a", ApprovalType.REJECT)])

    def test_inactive_member(self):
        with pytest.raises(MemberInactiveError):
            quorum.can_approve(_proposal(), _member(active=False), [])

    @pytest.mark.parametrize("status", [
        ProposalStatus.APPROVED,
        ProposalStatus.EXECUTED,
        ProposalStatus.REJECTED,
        ProposalStatus.CANCELLED,
        ProposalStatus.FAILED,
    ])
    def test_non_pending_status_checked_first(self, status):
        """Status wins over inactivity and prior votes."""
        with pytest.raises(ProposalNotPendingError):
            quorum.can_approve(_proposal(status), _member(active=False), [_vote("mbr_a")])


class TestCounting:
    """Tests for approval and rejection counting."""

    def test_counts_split_by_type(self):
        votes = [
            _vote("m1"),
            _vote("m2"),
            _vote("m3", ApprovalType.REJECT),
        ]
        assert quorum.count_approvals(votes) == 2
        assert quorum.count_rejections(votes) == 1

    def test_threshold(self):
        assert quorum.has_threshold_met(2, 2)
        assert quorum.has_threshold_met(3, 2)
        assert not quorum.has_threshold_met(1, 2)

    def test_progress(self):
        assert quorum.approval_progress(1, 3) == "1/3"

    def test_terminal_statuses(self):
        assert quorum.is_terminal(ProposalStatus.EXECUTED)
        assert quorum.is_terminal(ProposalStatus.CANCELLED)
        assert not quorum.is_terminal(ProposalStatus.PENDING)
        assert not quorum.is_terminal(ProposalStatus.APPROVED)


class TestTimeLock:
    """Tests for time_lock_elapsed."""

    def test_zero_lock_is_immediately_elapsed(self):
        assert quorum.time_lock_elapsed(T0, 0, T0) == (True, 0)

    def test_remaining_seconds(self):
        ok, remaining = quorum.time_lock_elapsed(T0, 3600, T0 + timedelta(seconds=600))
        assert ok is False
        assert remaining == 3000

    def test_fractional_seconds_are_floored(self):
        ok, remaining = quorum.time_lock_elapsed(T0, 10, T0 + timedelta(seconds=9.9))
        assert ok is False
        assert remaining == 1

    def test_exact_boundary_is_elapsed(self):
        assert quorum.time_lock_elapsed(T0, 60, T0 + timedelta(seconds=60)) == (True, 0)

    def test_remaining_clamped_at_zero(self):
        assert quorum.time_lock_elapsed(T0, 60, T0 + timedelta(days=1)) == (True, 0)

    def test_no_approval_timestamp(self):
        assert quorum.time_lock_elapsed(None, 60, T0) == (False, 60)


class TestCanRemove:
    """Tests for can_remove."""

    @pytest.mark.parametrize("active,threshold,expected", [
        (5, 2, 2),
        (4, 2, 1),
        (3, 2, 0),
        (2, 2, 0),
        (1, 3, 0),
    ])
    def test_keeps_threshold_plus_one(self, active, threshold, expected):
        assert quorum.can_remove(active, threshold) == expected
