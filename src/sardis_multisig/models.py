"""
Domain models for multisig governance.

Multisig groups own their members and proposals; a proposal owns its
approvals. All timestamps are timezone-aware UTC datetimes.
"""
from __future__ import annotations

import secrets
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum, IntFlag
from typing import Any, Dict, Iterable, List, Optional, Union

from .exceptions import MultisigValidationError


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def generate_id(prefix: str) -> str:
    """Generate an identifier: <prefix>_<random hex>."""
    return f"{prefix}_{secrets.token_hex(8)}"


class Capability(IntFlag):
    """Closed set of signer capabilities, persisted as a bitmask."""
    NONE = 0
    PROPOSE = 1
    VOTE = 2
    EXECUTE = 4
    ALL = PROPOSE | VOTE | EXECUTE

    @classmethod
    def parse(cls, value: Union["Capability", int, str, Iterable[str]]) -> "Capability":
        """Build a capability set from a bitmask, comma-separated names or a list of names.

        Names are matched case-insensitively against PROPOSE/VOTE/EXECUTE
        (and ALL). Anything else is rejected rather than guessed.
        """
        if isinstance(value, Capability):
            return value
        if isinstance(value, int):
            if value & ~int(cls.ALL):
                raise MultisigValidationError(
                    f"Unknown capability bits in {value}", field="capabilities"
                )
            return cls(value)
        names = value.split(",") if isinstance(value, str) else list(value)
        result = cls.NONE
        for name in names:
            member = cls.__members__.get(str(name).strip().upper())
            if member is None or member is cls.NONE:
                raise MultisigValidationError(
                    f"Unknown capability '{name}'", field="capabilities"
                )
            result |= member
        return result

    def names(self) -> List[str]:
        return [c.name.lower() for c in (Capability.PROPOSE, Capability.VOTE, Capability.EXECUTE) if c in self]


class ProposalStatus(str, Enum):
    """Lifecycle status of a proposal."""
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    EXECUTED = "EXECUTED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({
    ProposalStatus.EXECUTED,
    ProposalStatus.REJECTED,
    ProposalStatus.CANCELLED,
    ProposalStatus.FAILED,
})


class ApprovalType(str, Enum):
    """Kind of vote cast by a signer."""
    APPROVE = "APPROVE"
    REJECT = "REJECT"


@dataclass
class Multisig:
    """A governance group requiring M-of-N approval."""
    id: str
    name: str
    threshold: int
    time_lock_seconds: int = 0
    is_active: bool = True
    owner_user_id: Optional[str] = None
    next_transaction_index: int = 0
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "threshold": self.threshold,
            "time_lock_seconds": self.time_lock_seconds,
            "is_active": self.is_active,
            "owner_user_id": self.owner_user_id,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass
class Member:
    """A signer belonging to exactly one multisig."""
    id: str
    multisig_id: str
    public_key: str
    capabilities: Capability = Capability.VOTE
    is_active: bool = True
    last_activity_at: datetime = field(default_factory=utc_now)
    inactive_since: Optional[datetime] = None  # soft flag, still counted for quorum
    removed_at: Optional[datetime] = None
    removal_reason: Optional[str] = None
    user_id: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)

    @property
    def is_flagged_inactive(self) -> bool:
        return self.is_active and self.inactive_since is not None

    def has(self, capability: Capability) -> bool:
        return (self.capabilities & capability) == capability

    def hours_since_activity(self, now: datetime) -> float:
        return (now - self.last_activity_at).total_seconds() / 3600

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "multisig_id": self.multisig_id,
            "public_key": self.public_key,
            "capabilities": self.capabilities.names(),
            "is_active": self.is_active,
            "is_flagged_inactive": self.is_flagged_inactive,
            "last_activity_at": self.last_activity_at.isoformat(),
            "inactive_since": self.inactive_since.isoformat() if self.inactive_since else None,
            "removed_at": self.removed_at.isoformat() if self.removed_at else None,
            "removal_reason": self.removal_reason,
            "user_id": self.user_id,
        }


@dataclass
class Proposal:
    """A requested fund movement awaiting multisig approval."""
    id: str
    multisig_id: str
    transaction_index: int
    proposer_key: str
    from_account: str
    to_account: str
    amount: Decimal
    currency: str
    memo: Optional[str] = None
    status: ProposalStatus = ProposalStatus.PENDING
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    approved_at: Optional[datetime] = None  # latest approval, starts the time-lock
    executed_at: Optional[datetime] = None
    executed_transaction_hash: Optional[str] = None
    needs_reconciliation: bool = False
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "multisig_id": self.multisig_id,
            "transaction_index": str(self.transaction_index),
            "proposer_key": self.proposer_key,
            "from_account": self.from_account,
            "to_account": self.to_account,
            "amount": str(self.amount),
            "currency": self.currency,
            "memo": self.memo,
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "approved_at": self.approved_at.isoformat() if self.approved_at else None,
            "executed_at": self.executed_at.isoformat() if self.executed_at else None,
            "executed_transaction_hash": self.executed_transaction_hash,
            "needs_reconciliation": self.needs_reconciliation,
            "metadata": dict(self.metadata),
        }


@dataclass
class Approval:
    """One signer's vote on one proposal."""
    id: str
    proposal_id: str
    member_id: str
    member_key: str
    type: ApprovalType
    reason: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "proposal_id": self.proposal_id,
            "member_id": self.member_id,
            "member_key": self.member_key,
            "type": self.type.value,
            "reason": self.reason,
            "created_at": self.created_at.isoformat(),
        }


# =============================================================================
# Operation results and read projections
# =============================================================================

@dataclass
class ApprovalOutcome:
    proposal_id: str
    status: ProposalStatus
    approval_count: int
    threshold: int

    @property
    def threshold_met(self) -> bool:
        return self.approval_count >= self.threshold

    @property
    def progress(self) -> str:
        return f"{self.approval_count}/{self.threshold}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "proposal_id": self.proposal_id,
            "status": self.status.value,
            "approvals": self.approval_count,
            "threshold": self.threshold,
            "progress": self.progress,
        }


@dataclass
class ExecutionResult:
    proposal_id: str
    status: ProposalStatus
    transaction_hash: str
    executed_at: datetime
    executed_by: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "proposal_id": self.proposal_id,
            "status": self.status.value,
            "transaction_hash": self.transaction_hash,
            "executed_at": self.executed_at.isoformat(),
            "executed_by": self.executed_by,
        }


@dataclass
class ProposalView:
    """Read-only projection of a proposal and its voting progress."""
    proposal: Proposal
    approval_count: int
    rejection_count: int
    threshold: int
    time_lock_remaining_seconds: int
    approvals: List[Approval] = field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.proposal.is_terminal

    @property
    def status(self) -> ProposalStatus:
        return self.proposal.status

    def to_dict(self) -> Dict[str, Any]:
        data = self.proposal.to_dict()
        data.update({
            "approvals": self.approval_count,
            "rejections": self.rejection_count,
            "threshold": self.threshold,
            "progress": f"{self.approval_count}/{self.threshold}",
            "time_lock_remaining_seconds": self.time_lock_remaining_seconds,
            "is_terminal": self.is_terminal,
            "votes": [a.to_dict() for a in self.approvals],
        })
        return data


@dataclass
class InactiveMember:
    member_id: str
    multisig_id: str
    public_key: str
    last_activity_at: datetime
    inactive_since: datetime
    hours_since_activity: float
    newly_flagged: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "member_id": self.member_id,
            "multisig_id": self.multisig_id,
            "public_key": self.public_key,
            "last_activity_at": self.last_activity_at.isoformat(),
            "inactive_since": self.inactive_since.isoformat(),
            "hours_since_activity": round(self.hours_since_activity, 2),
            "newly_flagged": self.newly_flagged,
        }


@dataclass
class DeferredRemoval:
    member_id: str
    public_key: str
    reason: str = "REMOVAL_WOULD_BREAK_QUORUM"


@dataclass
class RemovalReport:
    multisig_id: str
    threshold: int
    active_before: int
    active_after: int
    max_removable: int
    removed: List[Member] = field(default_factory=list)
    deferred: List[DeferredRemoval] = field(default_factory=list)

    @property
    def removed_count(self) -> int:
        return len(self.removed)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "multisig_id": self.multisig_id,
            "threshold": self.threshold,
            "active_before": self.active_before,
            "active_after": self.active_after,
            "max_removable": self.max_removable,
            "removed": [m.public_key for m in self.removed],
            "deferred": [
                {"member_id": d.member_id, "public_key": d.public_key, "reason": d.reason}
                for d in self.deferred
            ],
        }


@dataclass
class SignerHealth:
    multisig_id: str
    threshold: int
    total_members: int
    active_members: int
    flagged_inactive: int
    removal_eligible: int
    removed_members: int
    max_removable: int
    is_healthy: bool
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "multisig_id": self.multisig_id,
            "threshold": self.threshold,
            "total_members": self.total_members,
            "active_members": self.active_members,
            "flagged_inactive": self.flagged_inactive,
            "removal_eligible": self.removal_eligible,
            "removed_members": self.removed_members,
            "max_removable": self.max_removable,
            "is_healthy": self.is_healthy,
            "warnings": list(self.warnings),
        }


@dataclass
class MultisigSweepResult:
    multisig_id: str
    flagged: List[InactiveMember] = field(default_factory=list)
    removal: Optional[RemovalReport] = None
    expired_proposals: List[str] = field(default_factory=list)


@dataclass
class SweepReport:
    started_at: datetime
    results: Dict[str, MultisigSweepResult] = field(default_factory=dict)
    errors: Dict[str, str] = field(default_factory=dict)

    @property
    def flagged_count(self) -> int:
        return sum(len(r.flagged) for r in self.results.values())

    @property
    def removed_count(self) -> int:
        return sum(r.removal.removed_count for r in self.results.values() if r.removal)

    @property
    def deferred_count(self) -> int:
        return sum(len(r.removal.deferred) for r in self.results.values() if r.removal)

    @property
    def expired_count(self) -> int:
        return sum(len(r.expired_proposals) for r in self.results.values())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "multisigs_checked": len(self.results) + len(self.errors),
            "flagged": self.flagged_count,
            "removed": self.removed_count,
            "deferred": self.deferred_count,
            "expired_proposals": self.expired_count,
            "errors": dict(self.errors),
        }
