"""Quorum policy: pure decision functions for M-of-N governance.

Nothing here touches the store or reads the clock, so every function is safe
to call from any task or thread.
"""
from __future__ import annotations

import math
from datetime import datetime
from typing import Iterable, Optional, Tuple

from .exceptions import AlreadyVotedError, MemberInactiveError, ProposalNotPendingError
from .models import TERMINAL_STATUSES, Approval, ApprovalType, Member, Proposal, ProposalStatus


def can_approve(proposal: Proposal, member: Member, approvals: Iterable[Approval]) -> bool:
    """Check that ``member`` may cast a vote on ``proposal``.

    Raises:
        ProposalNotPendingError: proposal is not PENDING
        MemberInactiveError: member has been deactivated
        AlreadyVotedError: member already approved or rejected this proposal
    """
    if proposal.status != ProposalStatus.PENDING:
        raise ProposalNotPendingError(proposal.id, proposal.status.value)
    if not member.is_active:
        raise MemberInactiveError(member.public_key)
    if any(a.member_id == member.id for a in approvals):
        raise AlreadyVotedError(proposal.id, member.public_key)
    return True


def count_approvals(approvals: Iterable[Approval]) -> int:
    return sum(1 for a in approvals if a.type == ApprovalType.APPROVE)


def count_rejections(approvals: Iterable[Approval]) -> int:
    return sum(1 for a in approvals if a.type == ApprovalType.REJECT)


def has_threshold_met(approval_count: int, threshold: int) -> bool:
    return approval_count >= threshold


def time_lock_elapsed(
    latest_approval_at: Optional[datetime],
    time_lock_seconds: int,
    now: datetime,
) -> Tuple[bool, int]:
    """Evaluate the post-approval time-lock.

    Returns:
        (ok, remaining_seconds) where remaining is
        ``time_lock_seconds - floor(now - latest_approval_at)`` clamped at 0.
        Without an approval timestamp the lock cannot have elapsed.
    """
    if latest_approval_at is None:
        return False, max(0, time_lock_seconds)

    elapsed = math.floor((now - latest_approval_at).total_seconds())
    remaining = time_lock_seconds - elapsed
    return remaining <= 0, max(0, remaining)


def can_remove(active_member_count: int, threshold: int) -> int:
    """Maximum number of active members that may be removed right now.

    Keeps at least ``threshold + 1`` active signers so the group can still
    reach quorum after one more failure.
    """
    return max(0, active_member_count - threshold - 1)


def approval_progress(approval_count: int, threshold: int) -> str:
    return f"{approval_count}/{threshold}"


def is_terminal(status: ProposalStatus) -> bool:
    return status in TERMINAL_STATUSES


__all__ = [
    "can_approve",
    "count_approvals",
    "count_rejections",
    "has_threshold_met",
    "time_lock_elapsed",
    "can_remove",
    "approval_progress",
    "is_terminal",
]
