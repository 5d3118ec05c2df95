"""
Sardis Multisig - M-of-N approval governance for custodied funds.

This package provides:
- Quorum policy (pure approval/time-lock/removal arithmetic)
- Proposal engine (propose, approve, reject, cancel, execute)
- Signer lifecycle management (inactivity flagging, quorum-safe removal)
- Periodic governance sweep on APScheduler
- In-memory and PostgreSQL proposal stores
- Settings-driven service wiring (store selection, logging setup)

Example usage:
    from sardis_multisig import (
        InMemoryProposalStore,
        SimulatedExecutionGateway,
        ProposalEngine,
    )

    engine = ProposalEngine(InMemoryProposalStore(), SimulatedExecutionGateway())
    multisig = await engine.create_multisig(
        "treasury", threshold=2,
        members=[("A", "propose,vote"), ("B", "vote"), ("C", "execute")],
    )
"""

from . import quorum
from .bootstrap import GovernanceServices, create_store, init_governance
from .config import GovernanceSettings, load_settings
from .engine import ProposalEngine
from .exceptions import (
    AlreadyExecutedError,
    AlreadyVotedError,
    ConfigurationError,
    DuplicateApprovalError,
    ExecutionFailedError,
    ExecutionOutcomeUnknownError,
    GatewayError,
    GatewayOutcomeUnknownError,
    GatewayRejectedError,
    MemberInactiveError,
    MissingCapabilityError,
    MultisigError,
    MultisigNotFoundError,
    MultisigValidationError,
    NotAMemberError,
    NotApprovedError,
    ProposalNotPendingError,
    ReconciliationRequiredError,
    RemovalWouldBreakQuorumError,
    StateConflictError,
    StoreError,
    TimeLockedError,
)
from .gateway import ExecutionGateway, SimulatedExecutionGateway, Submission
from .lifecycle import SignerLifecycleManager
from .logging_config import LogContext, setup_logging
from .models import (
    Approval,
    ApprovalOutcome,
    ApprovalType,
    Capability,
    DeferredRemoval,
    ExecutionResult,
    InactiveMember,
    Member,
    Multisig,
    MultisigSweepResult,
    Proposal,
    ProposalStatus,
    ProposalView,
    RemovalReport,
    SignerHealth,
    SweepReport,
)
from .scheduler import GovernanceScheduler
from .store import ProposalStore, StoreSession
from .store_memory import InMemoryProposalStore
from .store_postgres import PostgresProposalStore

__version__ = "0.1.0"

__all__ = [
    # Core
    "ProposalEngine",
    "SignerLifecycleManager",
    "GovernanceScheduler",
    "quorum",
    "GovernanceServices",
    "create_store",
    "init_governance",
    # Stores
    "ProposalStore",
    "StoreSession",
    "InMemoryProposalStore",
    "PostgresProposalStore",
    # Gateway
    "ExecutionGateway",
    "SimulatedExecutionGateway",
    "Submission",
    # Models
    "Approval",
    "ApprovalOutcome",
    "ApprovalType",
    "Capability",
    "DeferredRemoval",
    "ExecutionResult",
    "InactiveMember",
    "Member",
    "Multisig",
    "MultisigSweepResult",
    "Proposal",
    "ProposalStatus",
    "ProposalView",
    "RemovalReport",
    "SignerHealth",
    "SweepReport",
    # Config / logging
    "GovernanceSettings",
    "load_settings",
    "LogContext",
    "setup_logging",
    # Errors
    "MultisigError",
    "MultisigValidationError",
    "MultisigNotFoundError",
    "NotAMemberError",
    "MissingCapabilityError",
    "StateConflictError",
    "AlreadyVotedError",
    "ProposalNotPendingError",
    "MemberInactiveError",
    "NotApprovedError",
    "TimeLockedError",
    "AlreadyExecutedError",
    "ReconciliationRequiredError",
    "RemovalWouldBreakQuorumError",
    "GatewayError",
    "GatewayRejectedError",
    "GatewayOutcomeUnknownError",
    "ExecutionFailedError",
    "ExecutionOutcomeUnknownError",
    "StoreError",
    "DuplicateApprovalError",
    "ConfigurationError",
]
