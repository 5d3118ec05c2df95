"""In-memory proposal store (demo/dev)."""

from __future__ import annotations

import asyncio
import copy
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Dict, List, Optional, Tuple

from .exceptions import DuplicateApprovalError, MultisigNotFoundError, StoreError
from .models import Approval, Member, Multisig, Proposal, ProposalStatus, utc_now
from .store import StoreSession


class InMemoryProposalStore:
    """In-memory proposal store (swap for PostgreSQL in production).

    Row locks are keyed ``asyncio.Lock`` objects released when the owning
    transaction exits. Writes apply immediately; there is no rollback.
    Objects are copied on the way in and out so callers only change stored
    state through explicit update calls.
    """

    def __init__(self) -> None:
        self._multisigs: Dict[str, Multisig] = {}
        self._members: Dict[str, Member] = {}
        self._member_keys: Dict[Tuple[str, str], str] = {}  # (multisig_id, public_key) -> member id
        self._proposals: Dict[str, Proposal] = {}
        self._proposal_indexes: Dict[Tuple[str, int], str] = {}
        self._approvals: Dict[str, List[Approval]] = {}  # proposal id -> approvals
        self._proposal_locks: Dict[str, asyncio.Lock] = {}
        self._multisig_locks: Dict[str, asyncio.Lock] = {}

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[StoreSession]:
        session = _InMemorySession(self)
        try:
            yield session
        finally:
            session.release_locks()

    def _lock_for(self, table: Dict[str, asyncio.Lock], key: str) -> asyncio.Lock:
        lock = table.get(key)
        if lock is None:
            lock = asyncio.Lock()
            table[key] = lock
        return lock


class _InMemorySession:
    def __init__(self, store: InMemoryProposalStore) -> None:
        self._store = store
        self._held: Dict[str, asyncio.Lock] = {}

    def release_locks(self) -> None:
        for lock in reversed(list(self._held.values())):
            lock.release()
        self._held.clear()

    async def _acquire(self, key: str, lock: asyncio.Lock) -> None:
        if key in self._held:
            return
        await lock.acquire()
        self._held[key] = lock

    # ------------------------------------------------------------------
    # Multisigs
    # ------------------------------------------------------------------

    async def create_multisig(self, multisig: Multisig) -> Multisig:
        if multisig.id in self._store._multisigs:
            raise StoreError(f"Multisig {multisig.id} already exists")
        self._store._multisigs[multisig.id] = copy.deepcopy(multisig)
        return copy.deepcopy(multisig)

    async def get_multisig(self, multisig_id: str) -> Optional[Multisig]:
        multisig = self._store._multisigs.get(multisig_id)
        return copy.deepcopy(multisig) if multisig else None

    async def get_multisig_by_owner(self, user_id: str) -> Optional[Multisig]:
        for multisig in self._store._multisigs.values():
            if multisig.owner_user_id == user_id and multisig.is_active:
                return copy.deepcopy(multisig)
        return None

    async def list_multisigs(self, active_only: bool = True) -> List[Multisig]:
        return [
            copy.deepcopy(m)
            for m in sorted(self._store._multisigs.values(), key=lambda m: (m.created_at, m.id))
            if m.is_active or not active_only
        ]

    async def lock_multisig(self, multisig_id: str) -> Optional[Multisig]:
        if multisig_id not in self._store._multisigs:
            return None
        lock = self._store._lock_for(self._store._multisig_locks, multisig_id)
        await self._acquire(f"multisig:{multisig_id}", lock)
        return await self.get_multisig(multisig_id)

    async def next_transaction_index(self, multisig_id: str) -> int:
        multisig = self._store._multisigs.get(multisig_id)
        if multisig is None:
            raise MultisigNotFoundError("Multisig", multisig_id)
        # No await between read and write: atomic within the event loop.
        multisig.next_transaction_index += 1
        multisig.updated_at = utc_now()
        return multisig.next_transaction_index

    # ------------------------------------------------------------------
    # Members
    # ------------------------------------------------------------------

    async def add_member(self, member: Member) -> Member:
        key = (member.multisig_id, member.public_key)
        if key in self._store._member_keys:
            raise StoreError(
                f"Member {member.public_key} already belongs to multisig {member.multisig_id}"
            )
        self._store._members[member.id] = copy.deepcopy(member)
        self._store._member_keys[key] = member.id
        return copy.deepcopy(member)

    async def get_member(self, multisig_id: str, public_key: str) -> Optional[Member]:
        member_id = self._store._member_keys.get((multisig_id, public_key))
        if member_id is None:
            return None
        return copy.deepcopy(self._store._members[member_id])

    async def list_members(self, multisig_id: str, active_only: bool = False) -> List[Member]:
        members = [
            m for m in self._store._members.values()
            if m.multisig_id == multisig_id and (m.is_active or not active_only)
        ]
        members.sort(key=lambda m: (m.created_at, m.id))
        return [copy.deepcopy(m) for m in members]

    async def touch_member(self, member_id: str, at: datetime) -> bool:
        member = self._store._members.get(member_id)
        if member is None or not member.is_active:
            return False
        member.last_activity_at = at
        member.inactive_since = None
        return True

    async def flag_member_inactive(
        self, member_id: str, since: datetime, silent_since: datetime
    ) -> bool:
        member = self._store._members.get(member_id)
        if (
            member is None
            or not member.is_active
            or member.inactive_since is not None
            or member.last_activity_at > silent_since
        ):
            return False
        member.inactive_since = since
        return True

    async def deactivate_member(
        self,
        member_id: str,
        removed_at: datetime,
        silent_since: datetime,
        reason: Optional[str] = None,
    ) -> bool:
        member = self._store._members.get(member_id)
        if (
            member is None
            or not member.is_active
            or member.inactive_since is None
            or member.last_activity_at > silent_since
        ):
            return False
        member.is_active = False
        member.removed_at = removed_at
        member.removal_reason = reason
        return True

    # ------------------------------------------------------------------
    # Proposals
    # ------------------------------------------------------------------

    async def create_proposal(self, proposal: Proposal) -> Proposal:
        key = (proposal.multisig_id, proposal.transaction_index)
        if key in self._store._proposal_indexes:
            raise StoreError(
                f"Transaction index {proposal.transaction_index} already used "
                f"in multisig {proposal.multisig_id}"
            )
        self._store._proposals[proposal.id] = copy.deepcopy(proposal)
        self._store._proposal_indexes[key] = proposal.id
        self._store._approvals.setdefault(proposal.id, [])
        return copy.deepcopy(proposal)

    async def get_proposal(self, proposal_id: str) -> Optional[Proposal]:
        proposal = self._store._proposals.get(proposal_id)
        return copy.deepcopy(proposal) if proposal else None

    async def lock_proposal(self, proposal_id: str) -> Optional[Proposal]:
        if proposal_id not in self._store._proposals:
            return None
        lock = self._store._lock_for(self._store._proposal_locks, proposal_id)
        await self._acquire(f"proposal:{proposal_id}", lock)
        return await self.get_proposal(proposal_id)

    async def list_proposals(
        self,
        multisig_id: str,
        status: Optional[ProposalStatus] = None,
        created_before: Optional[datetime] = None,
    ) -> List[Proposal]:
        proposals = [
            p for p in self._store._proposals.values()
            if p.multisig_id == multisig_id
            and (status is None or p.status == status)
            and (created_before is None or p.created_at < created_before)
        ]
        proposals.sort(key=lambda p: p.transaction_index)
        return [copy.deepcopy(p) for p in proposals]

    async def update_proposal(self, proposal: Proposal) -> None:
        if proposal.id not in self._store._proposals:
            raise MultisigNotFoundError("Proposal", proposal.id)
        self._store._proposals[proposal.id] = copy.deepcopy(proposal)

    # ------------------------------------------------------------------
    # Approvals
    # ------------------------------------------------------------------

    async def add_approval(self, approval: Approval) -> Approval:
        existing = self._store._approvals.setdefault(approval.proposal_id, [])
        if any(a.member_id == approval.member_id for a in existing):
            raise DuplicateApprovalError(approval.proposal_id, approval.member_id)
        existing.append(copy.deepcopy(approval))
        return copy.deepcopy(approval)

    async def list_approvals(self, proposal_id: str) -> List[Approval]:
        return [copy.deepcopy(a) for a in self._store._approvals.get(proposal_id, [])]
