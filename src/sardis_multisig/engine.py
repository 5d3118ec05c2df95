"""
Proposal engine for multisig-governed fund movements.

Owns the proposal state machine:

    PENDING  -> APPROVED | REJECTED | CANCELLED
    APPROVED -> EXECUTED | FAILED

REJECTED, CANCELLED, EXECUTED and FAILED are terminal. A single REJECT vote
vetoes a pending proposal. Approve and execute are serialized per proposal
through the store's row lock, and execute holds that lock across the gateway
call so a proposal reaches the ledger at most once.

The engine keeps no state between calls: every transition re-reads the
proposal, its approvals and the multisig from the store first.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Union

from . import quorum
from .config import GovernanceSettings
from .exceptions import (
    AlreadyExecutedError,
    AlreadyVotedError,
    DuplicateApprovalError,
    ExecutionFailedError,
    ExecutionOutcomeUnknownError,
    GatewayOutcomeUnknownError,
    GatewayRejectedError,
    MemberInactiveError,
    MissingCapabilityError,
    MultisigNotFoundError,
    MultisigValidationError,
    NotAMemberError,
    NotApprovedError,
    ProposalNotPendingError,
    ReconciliationRequiredError,
    TimeLockedError,
)
from .gateway import ExecutionGateway
from .lifecycle import SignerLifecycleManager
from .logging_config import LogContext, mask_key
from .models import (
    Approval,
    ApprovalOutcome,
    ApprovalType,
    Capability,
    ExecutionResult,
    Member,
    Multisig,
    Proposal,
    ProposalStatus,
    ProposalView,
    generate_id,
    utc_now,
)
from .store import ProposalStore, StoreSession

logger = logging.getLogger("sardis.multisig.engine")

MemberSpec = Union[str, Tuple[str, Any], Dict[str, Any]]

# Matches the NUMERIC(18,8) amount column.
AMOUNT_SCALE = 8
AMOUNT_QUANTUM = Decimal(1).scaleb(-AMOUNT_SCALE)
MAX_AMOUNT = Decimal(10) ** (18 - AMOUNT_SCALE)


class ProposalEngine:
    """Multi-party approval engine.

    Args:
        store: Source of truth for multisigs, members, proposals and approvals
        gateway: Ledger boundary used to execute approved proposals
        lifecycle: Signer lifecycle manager (built from ``store`` if omitted)
        settings: Governance settings (currency allow-list, TTLs)
        clock: Returns the current UTC time
    """

    def __init__(
        self,
        store: ProposalStore,
        gateway: ExecutionGateway,
        lifecycle: Optional[SignerLifecycleManager] = None,
        settings: Optional[GovernanceSettings] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._store = store
        self._gateway = gateway
        self._settings = settings or GovernanceSettings()
        self._clock = clock
        self._lifecycle = lifecycle or SignerLifecycleManager(store, self._settings, clock)

    @property
    def lifecycle(self) -> SignerLifecycleManager:
        return self._lifecycle

    # ------------------------------------------------------------------
    # Multisig setup
    # ------------------------------------------------------------------

    async def create_multisig(
        self,
        name: str,
        threshold: int,
        members: Iterable[MemberSpec],
        time_lock_seconds: int = 0,
        owner_user_id: Optional[str] = None,
    ) -> Multisig:
        """
        Form a governance group.

        Args:
            name: Human-readable name
            threshold: Approvals required to execute (1..member count)
            members: Public keys, ``(public_key, capabilities)`` pairs or
                dicts with ``public_key``/``capabilities``/``user_id``.
                Bare keys get VOTE only.
            time_lock_seconds: Delay between reaching threshold and execution
            owner_user_id: Owning user for user-scoped multisigs

        Returns:
            Created Multisig
        """
        specs = [self._parse_member_spec(spec) for spec in members]
        keys = [key for key, _, _ in specs]

        if not specs:
            raise MultisigValidationError("A multisig needs at least one member", field="members")
        if len(set(keys)) != len(keys):
            raise MultisigValidationError("Duplicate member public keys", field="members")
        if threshold < 1:
            raise MultisigValidationError("Threshold must be at least 1", field="threshold")
        if threshold > len(specs):
            raise MultisigValidationError(
                f"Threshold {threshold} exceeds member count {len(specs)}",
                field="threshold",
            )
        if time_lock_seconds < 0:
            raise MultisigValidationError("Time-lock cannot be negative", field="time_lock_seconds")
        if not any(caps & Capability.PROPOSE for _, caps, _ in specs):
            raise MultisigValidationError("At least one member must hold PROPOSE", field="members")
        if not any(caps & Capability.EXECUTE for _, caps, _ in specs):
            raise MultisigValidationError("At least one member must hold EXECUTE", field="members")
        voters = sum(1 for _, caps, _ in specs if caps & Capability.VOTE)
        if voters < threshold:
            raise MultisigValidationError(
                f"Only {voters} members can vote; threshold is {threshold}",
                field="threshold",
            )

        now = self._clock()
        multisig = Multisig(
            id=generate_id("msig"),
            name=name,
            threshold=threshold,
            time_lock_seconds=time_lock_seconds,
            owner_user_id=owner_user_id,
            created_at=now,
            updated_at=now,
        )

        async with self._store.transaction() as tx:
            if owner_user_id is not None and await tx.get_multisig_by_owner(owner_user_id):
                raise MultisigValidationError(
                    f"User {owner_user_id} already has an active multisig",
                    field="owner_user_id",
                )
            multisig = await tx.create_multisig(multisig)
            for public_key, capabilities, user_id in specs:
                await tx.add_member(Member(
                    id=generate_id("mbr"),
                    multisig_id=multisig.id,
                    public_key=public_key,
                    capabilities=capabilities,
                    user_id=user_id,
                    last_activity_at=now,
                    created_at=now,
                ))

        logger.info(
            f"Created multisig {multisig.id} '{name}' ({threshold}-of-{len(specs)}, "
            f"time-lock {time_lock_seconds}s)"
        )
        return multisig

    async def add_member(
        self,
        multisig_id: str,
        public_key: str,
        capabilities: Union[Capability, int, str, Iterable[str]] = Capability.VOTE,
        added_by_key: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> Member:
        """Add a signer to an existing multisig."""
        caps = Capability.parse(capabilities)
        now = self._clock()

        async with self._store.transaction() as tx:
            multisig = await tx.lock_multisig(multisig_id)
            if multisig is None:
                raise MultisigNotFoundError("Multisig", multisig_id)
            if added_by_key is not None:
                await self._require_member(tx, multisig_id, added_by_key, Capability.PROPOSE)
            if await tx.get_member(multisig_id, public_key) is not None:
                raise MultisigValidationError(
                    f"Key {public_key} is already a member of multisig {multisig_id}",
                    field="public_key",
                )
            member = await tx.add_member(Member(
                id=generate_id("mbr"),
                multisig_id=multisig_id,
                public_key=public_key,
                capabilities=caps,
                user_id=user_id,
                last_activity_at=now,
                created_at=now,
            ))
            if added_by_key is not None:
                await self._lifecycle.record_activity(multisig_id, added_by_key, now, session=tx)

        logger.info(f"Added signer {mask_key(public_key)} to multisig {multisig_id} ({caps.names()})")
        return member

    async def get_multisig(self, multisig_id: str) -> Multisig:
        async with self._store.transaction() as tx:
            multisig = await tx.get_multisig(multisig_id)
        if multisig is None:
            raise MultisigNotFoundError("Multisig", multisig_id)
        return multisig

    async def get_user_multisig(self, user_id: str) -> Optional[Multisig]:
        """Active multisig owned by ``user_id``, if any."""
        async with self._store.transaction() as tx:
            return await tx.get_multisig_by_owner(user_id)

    async def list_members(self, multisig_id: str, active_only: bool = False) -> List[Member]:
        async with self._store.transaction() as tx:
            return await tx.list_members(multisig_id, active_only=active_only)

    # ------------------------------------------------------------------
    # Proposal lifecycle
    # ------------------------------------------------------------------

    async def create_proposal(
        self,
        multisig_id: str,
        from_account: str,
        to_account: str,
        amount: Union[Decimal, int, str],
        currency: str,
        memo: Optional[str],
        proposer_key: str,
    ) -> Proposal:
        """
        Create a transfer proposal awaiting approval.

        Args:
            multisig_id: Governing multisig
            from_account: Source account/wallet
            to_account: Destination account/wallet
            amount: Positive amount
            currency: Currency code from the allow-list
            memo: Free-form memo (defaults to "Transfer: <amount> <currency>")
            proposer_key: Public key of a member holding PROPOSE

        Returns:
            Created Proposal in PENDING status
        """
        amount = self._validate_amount(amount)
        currency = (currency or "").strip().upper()
        if currency not in self._settings.allowed_currencies:
            raise MultisigValidationError(
                f"Currency '{currency}' is not allowed "
                f"(allowed: {', '.join(self._settings.allowed_currencies)})",
                field="currency",
            )
        if not from_account or not to_account:
            raise MultisigValidationError("Invalid wallet addresses", field="to_account")

        now = self._clock()
        with LogContext(multisig_id=multisig_id, member_key=proposer_key):
            async with self._store.transaction() as tx:
                multisig = await tx.get_multisig(multisig_id)
                if multisig is None:
                    raise MultisigNotFoundError("Multisig", multisig_id)
                if not multisig.is_active:
                    raise MultisigValidationError(f"Multisig {multisig_id} is not active")
                await self._require_member(tx, multisig_id, proposer_key, Capability.PROPOSE)

                index = await tx.next_transaction_index(multisig_id)
                proposal = await tx.create_proposal(Proposal(
                    id=generate_id("prop"),
                    multisig_id=multisig_id,
                    transaction_index=index,
                    proposer_key=proposer_key,
                    from_account=from_account,
                    to_account=to_account,
                    amount=amount,
                    currency=currency,
                    memo=memo or f"Transfer: {amount} {currency}",
                    status=ProposalStatus.PENDING,
                    created_at=now,
                    updated_at=now,
                ))
                await self._lifecycle.record_activity(multisig_id, proposer_key, now, session=tx)

            logger.info(
                f"Created proposal {proposal.id} (index {index}) in multisig {multisig_id}: "
                f"{amount} {currency} from {from_account} to {to_account}"
            )
        return proposal

    async def approve(self, proposal_id: str, member_key: str) -> ApprovalOutcome:
        """
        Record an APPROVE vote.

        Reaching the threshold moves the proposal to APPROVED and starts the
        time-lock from this approval's timestamp.

        Returns:
            ApprovalOutcome with the resulting count and threshold
        """
        with LogContext(proposal_id=proposal_id, member_key=member_key):
            async with self._store.transaction() as tx:
                proposal = await self._lock_proposal(tx, proposal_id)
                now = self._clock()
                multisig = await self._get_multisig(tx, proposal.multisig_id)
                approvals = await tx.list_approvals(proposal_id)
                member = await self._voting_member(tx, proposal, member_key, approvals)

                await self._add_vote(tx, proposal, member, ApprovalType.APPROVE, now)
                approval_count = quorum.count_approvals(approvals) + 1

                if quorum.has_threshold_met(approval_count, multisig.threshold):
                    proposal.status = ProposalStatus.APPROVED
                    proposal.approved_at = now
                    proposal.updated_at = now
                    await tx.update_proposal(proposal)

                await self._lifecycle.record_activity(proposal.multisig_id, member_key, now, session=tx)

            outcome = ApprovalOutcome(
                proposal_id=proposal_id,
                status=proposal.status,
                approval_count=approval_count,
                threshold=multisig.threshold,
            )
            if proposal.status == ProposalStatus.APPROVED:
                logger.info(f"Proposal {proposal_id} approved by {outcome.progress} members")
            else:
                logger.info(f"Proposal {proposal_id} has {outcome.progress} approvals")
        return outcome

    async def reject(
        self,
        proposal_id: str,
        member_key: str,
        reason: Optional[str] = None,
    ) -> None:
        """Record a REJECT vote; a single rejection vetoes the proposal."""
        with LogContext(proposal_id=proposal_id, member_key=member_key):
            async with self._store.transaction() as tx:
                proposal = await self._lock_proposal(tx, proposal_id)
                now = self._clock()
                approvals = await tx.list_approvals(proposal_id)
                member = await self._voting_member(tx, proposal, member_key, approvals)

                await self._add_vote(tx, proposal, member, ApprovalType.REJECT, now, reason)
                proposal.status = ProposalStatus.REJECTED
                if reason:
                    proposal.metadata["rejection_reason"] = reason
                proposal.metadata["rejected_by"] = member_key
                proposal.updated_at = now
                await tx.update_proposal(proposal)

                await self._lifecycle.record_activity(proposal.multisig_id, member_key, now, session=tx)

            logger.info(f"Proposal {proposal_id} rejected by {mask_key(member_key)}")

    async def cancel(
        self,
        proposal_id: str,
        member_key: str,
        reason: Optional[str] = None,
    ) -> Proposal:
        """Withdraw a pending proposal. Only its proposer may cancel it."""
        with LogContext(proposal_id=proposal_id, member_key=member_key):
            async with self._store.transaction() as tx:
                proposal = await self._lock_proposal(tx, proposal_id)
                now = self._clock()
                if proposal.status != ProposalStatus.PENDING:
                    raise ProposalNotPendingError(proposal_id, proposal.status.value)
                member = await self._require_member(tx, proposal.multisig_id, member_key)
                if member.public_key != proposal.proposer_key:
                    raise MissingCapabilityError(member_key, "CANCEL")

                proposal.status = ProposalStatus.CANCELLED
                if reason:
                    proposal.metadata["cancellation_reason"] = reason
                proposal.updated_at = now
                await tx.update_proposal(proposal)
                await self._lifecycle.record_activity(proposal.multisig_id, member_key, now, session=tx)

            logger.info(f"Proposal {proposal_id} cancelled by its proposer")
        return proposal

    async def execute(self, proposal_id: str, executor_key: str) -> ExecutionResult:
        """
        Execute an approved proposal through the gateway.

        The proposal row stays locked for the whole gateway call, so
        concurrent callers queue behind it and then observe the terminal
        status instead of submitting twice.

        Raises:
            AlreadyExecutedError: proposal already EXECUTED
            NotApprovedError: proposal not APPROVED or approvals below threshold
            ReconciliationRequiredError: an earlier attempt had an unknown outcome
            TimeLockedError: time-lock still running (``remaining_seconds``)
            ExecutionFailedError: ledger rejected the transfer; proposal FAILED
            ExecutionOutcomeUnknownError: outcome ambiguous; proposal stays APPROVED
        """
        gateway_error: Optional[Exception] = None
        submitted = False
        tx_hash: Optional[str] = None
        with LogContext(proposal_id=proposal_id, member_key=executor_key):
            try:
                async with self._store.transaction() as tx:
                    proposal = await self._lock_proposal(tx, proposal_id)
                    if proposal.status == ProposalStatus.EXECUTED:
                        raise AlreadyExecutedError(proposal_id, proposal.executed_transaction_hash)
                    if proposal.status != ProposalStatus.APPROVED:
                        raise NotApprovedError(proposal_id, proposal.status.value)
                    if proposal.needs_reconciliation:
                        raise ReconciliationRequiredError(proposal_id)

                    multisig = await self._get_multisig(tx, proposal.multisig_id)
                    await self._require_member(tx, proposal.multisig_id, executor_key, Capability.EXECUTE)

                    approvals = await tx.list_approvals(proposal_id)
                    approval_count = quorum.count_approvals(approvals)
                    if not quorum.has_threshold_met(approval_count, multisig.threshold):
                        raise NotApprovedError(
                            proposal_id, proposal.status.value, approval_count, multisig.threshold
                        )

                    now = self._clock()
                    ok, remaining = quorum.time_lock_elapsed(
                        proposal.approved_at, multisig.time_lock_seconds, now
                    )
                    if not ok:
                        raise TimeLockedError(proposal_id, remaining)

                    await self._lifecycle.record_activity(proposal.multisig_id, executor_key, now, session=tx)

                    submitted = True
                    try:
                        tx_hash = await self._gateway.submit(proposal)
                    except GatewayRejectedError as e:
                        gateway_error = e
                        proposal.status = ProposalStatus.FAILED
                        proposal.metadata["failure_reason"] = e.message
                    except Exception as e:
                        gateway_error = e
                        proposal.needs_reconciliation = True
                        proposal.metadata["execution_error"] = str(e)
                        proposal.metadata["execution_attempted_at"] = now.isoformat()
                    else:
                        proposal.status = ProposalStatus.EXECUTED
                        proposal.executed_transaction_hash = tx_hash
                        proposal.executed_at = self._clock()
                        proposal.metadata["executed_by"] = executor_key
                    proposal.updated_at = self._clock()
                    await tx.update_proposal(proposal)
            except BaseException as e:
                # Submitted but the outcome was never recorded (cancelled, or
                # the store failed): flag it so nobody can submit again.
                if submitted:
                    await asyncio.shield(self._flag_unrecorded_execution(proposal_id, e, tx_hash))
                raise

            if isinstance(gateway_error, GatewayRejectedError):
                logger.error(f"Proposal {proposal_id} failed on the ledger: {gateway_error.message}")
                raise ExecutionFailedError(proposal_id, gateway_error.message) from gateway_error
            if gateway_error is not None:
                kind = "timed out" if isinstance(gateway_error, GatewayOutcomeUnknownError) else "errored"
                logger.error(
                    f"Execution of proposal {proposal_id} {kind} with unknown ledger outcome; "
                    f"left APPROVED pending reconciliation: {gateway_error}"
                )
                raise ExecutionOutcomeUnknownError(proposal_id, str(gateway_error)) from gateway_error

            logger.info(
                f"Proposal {proposal_id} executed by {mask_key(executor_key)}: "
                f"{proposal.executed_transaction_hash}"
            )
        return ExecutionResult(
            proposal_id=proposal_id,
            status=proposal.status,
            transaction_hash=proposal.executed_transaction_hash or "",
            executed_at=proposal.executed_at or now,
            executed_by=executor_key,
        )

    async def reconcile_execution(
        self,
        proposal_id: str,
        transaction_hash: Optional[str] = None,
        failure_reason: Optional[str] = None,
    ) -> Proposal:
        """
        Resolve an execution whose ledger outcome was unknown.

        Pass ``transaction_hash`` when the ledger shows the transfer landed
        (proposal becomes EXECUTED), or ``failure_reason`` when it confirms
        nothing moved (proposal becomes FAILED).
        """
        if bool(transaction_hash) == bool(failure_reason):
            raise MultisigValidationError(
                "Provide exactly one of transaction_hash or failure_reason"
            )

        with LogContext(proposal_id=proposal_id):
            async with self._store.transaction() as tx:
                proposal = await self._lock_proposal(tx, proposal_id)
                if not proposal.needs_reconciliation or proposal.status != ProposalStatus.APPROVED:
                    raise MultisigValidationError(
                        f"Proposal {proposal_id} has no execution awaiting reconciliation"
                    )

                now = self._clock()
                proposal.needs_reconciliation = False
                proposal.updated_at = now
                if transaction_hash:
                    proposal.status = ProposalStatus.EXECUTED
                    proposal.executed_transaction_hash = transaction_hash
                    proposal.executed_at = now
                else:
                    proposal.status = ProposalStatus.FAILED
                    proposal.metadata["failure_reason"] = failure_reason
                await tx.update_proposal(proposal)

            logger.info(f"Reconciled proposal {proposal_id} as {proposal.status.value}")
        return proposal

    async def expire_stale_proposals(
        self,
        multisig_id: str,
        now: Optional[datetime] = None,
        max_age_hours: Optional[int] = None,
    ) -> List[str]:
        """Cancel PENDING proposals older than the TTL.

        Returns:
            IDs of the proposals that were cancelled
        """
        now = now or self._clock()
        hours = self._settings.proposal_ttl_hours if max_age_hours is None else max_age_hours
        if hours <= 0:
            return []
        cutoff = now - timedelta(hours=hours)

        async with self._store.transaction() as tx:
            stale = await tx.list_proposals(
                multisig_id, status=ProposalStatus.PENDING, created_before=cutoff
            )

        expired: List[str] = []
        for candidate in stale:
            async with self._store.transaction() as tx:
                proposal = await tx.lock_proposal(candidate.id)
                # Re-check under the lock; a vote may have landed meanwhile.
                if proposal is None or proposal.status != ProposalStatus.PENDING:
                    continue
                proposal.status = ProposalStatus.CANCELLED
                proposal.metadata["cancellation_reason"] = "stale"
                proposal.metadata["expired_at"] = now.isoformat()
                proposal.updated_at = now
                await tx.update_proposal(proposal)
            expired.append(proposal.id)

        if expired:
            logger.info(f"Expired {len(expired)} stale proposal(s) in multisig {multisig_id}")
        return expired

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_status(self, proposal_id: str) -> ProposalView:
        """Read-only projection with vote counts and time-lock remaining."""
        async with self._store.transaction() as tx:
            proposal = await tx.get_proposal(proposal_id)
            if proposal is None:
                raise MultisigNotFoundError("Proposal", proposal_id)
            multisig = await self._get_multisig(tx, proposal.multisig_id)
            approvals = await tx.list_approvals(proposal_id)

        remaining = 0
        if proposal.status == ProposalStatus.APPROVED:
            _, remaining = quorum.time_lock_elapsed(
                proposal.approved_at, multisig.time_lock_seconds, self._clock()
            )
        elif proposal.status == ProposalStatus.PENDING:
            remaining = multisig.time_lock_seconds

        return ProposalView(
            proposal=proposal,
            approval_count=quorum.count_approvals(approvals),
            rejection_count=quorum.count_rejections(approvals),
            threshold=multisig.threshold,
            time_lock_remaining_seconds=remaining,
            approvals=approvals,
        )

    async def list_pending_proposals(self, multisig_id: str) -> List[Proposal]:
        return await self.list_proposals(multisig_id, status=ProposalStatus.PENDING)

    async def list_proposals(
        self,
        multisig_id: str,
        status: Optional[ProposalStatus] = None,
    ) -> List[Proposal]:
        async with self._store.transaction() as tx:
            if await tx.get_multisig(multisig_id) is None:
                raise MultisigNotFoundError("Multisig", multisig_id)
            return await tx.list_proposals(multisig_id, status=status)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _flag_unrecorded_execution(
        self,
        proposal_id: str,
        error: BaseException,
        tx_hash: Optional[str],
    ) -> None:
        try:
            async with self._store.transaction() as tx:
                proposal = await tx.lock_proposal(proposal_id)
                if proposal is None or proposal.status != ProposalStatus.APPROVED:
                    return
                now = self._clock()
                proposal.needs_reconciliation = True
                proposal.metadata["execution_error"] = repr(error)
                proposal.metadata["execution_attempted_at"] = now.isoformat()
                if tx_hash:
                    proposal.metadata["submitted_transaction_hash"] = tx_hash
                proposal.updated_at = now
                await tx.update_proposal(proposal)
        except Exception:
            logger.error(
                f"Could not flag proposal {proposal_id} for reconciliation after an "
                "interrupted execution; manual reconciliation required",
                exc_info=True,
            )
            return
        logger.error(
            f"Execution of proposal {proposal_id} was interrupted after submission "
            f"({error!r}); left APPROVED pending reconciliation"
        )

    @staticmethod
    def _validate_amount(amount: Union[Decimal, int, str]) -> Decimal:
        if isinstance(amount, float):
            amount = str(amount)
        try:
            value = Decimal(amount)
        except (InvalidOperation, TypeError, ValueError):
            raise MultisigValidationError(f"Invalid amount: {amount!r}", field="amount")
        if not value.is_finite() or value <= 0:
            raise MultisigValidationError("Amount must be positive", field="amount")
        if value >= MAX_AMOUNT:
            raise MultisigValidationError(f"Amount must be below {MAX_AMOUNT}", field="amount")
        if value != value.quantize(AMOUNT_QUANTUM):
            raise MultisigValidationError(
                f"Amount has more than {AMOUNT_SCALE} decimal places", field="amount"
            )
        return value

    @staticmethod
    def _parse_member_spec(spec: MemberSpec) -> Tuple[str, Capability, Optional[str]]:
        if isinstance(spec, str):
            return spec, Capability.VOTE, None
        if isinstance(spec, dict):
            key = spec.get("public_key")
            if not key:
                raise MultisigValidationError("Member is missing public_key", field="members")
            return key, Capability.parse(spec.get("capabilities", Capability.VOTE)), spec.get("user_id")
        key, caps = spec
        return key, Capability.parse(caps), None

    async def _lock_proposal(self, tx: StoreSession, proposal_id: str) -> Proposal:
        proposal = await tx.lock_proposal(proposal_id)
        if proposal is None:
            raise MultisigNotFoundError("Proposal", proposal_id)
        return proposal

    async def _get_multisig(self, tx: StoreSession, multisig_id: str) -> Multisig:
        multisig = await tx.get_multisig(multisig_id)
        if multisig is None:
            raise MultisigNotFoundError("Multisig", multisig_id)
        return multisig

    async def _require_member(
        self,
        tx: StoreSession,
        multisig_id: str,
        member_key: str,
        capability: Optional[Capability] = None,
    ) -> Member:
        member = await tx.get_member(multisig_id, member_key)
        if member is None:
            raise NotAMemberError(multisig_id, member_key)
        if not member.is_active:
            raise MemberInactiveError(member_key)
        if capability is not None and not member.has(capability):
            raise MissingCapabilityError(member_key, capability.name)
        return member

    async def _voting_member(
        self,
        tx: StoreSession,
        proposal: Proposal,
        member_key: str,
        approvals: List[Approval],
    ) -> Member:
        member = await tx.get_member(proposal.multisig_id, member_key)
        if member is None:
            raise NotAMemberError(proposal.multisig_id, member_key)
        quorum.can_approve(proposal, member, approvals)
        if not member.has(Capability.VOTE):
            raise MissingCapabilityError(member_key, Capability.VOTE.name)
        return member

    async def _add_vote(
        self,
        tx: StoreSession,
        proposal: Proposal,
        member: Member,
        vote: ApprovalType,
        now: datetime,
        reason: Optional[str] = None,
    ) -> Approval:
        try:
            return await tx.add_approval(Approval(
                id=generate_id("vote"),
                proposal_id=proposal.id,
                member_id=member.id,
                member_key=member.public_key,
                type=vote,
                reason=reason,
                created_at=now,
            ))
        except DuplicateApprovalError as e:
            raise AlreadyVotedError(proposal.id, member.public_key) from e
