"""Proposal store contract.

The store is the single source of truth for multisigs, members, proposals
and approvals, and the only place where mutation is serialized. Every read or
write happens inside ``store.transaction()``; locks taken with
``lock_proposal`` / ``lock_multisig`` are held until that transaction ends.

Implementations:
- InMemoryProposalStore (demo/dev/tests)
- PostgresProposalStore (production)
"""

from __future__ import annotations

from datetime import datetime
from typing import AsyncContextManager, List, Optional, Protocol

from .models import Approval, Member, Multisig, Proposal, ProposalStatus


class StoreSession(Protocol):
    # Multisigs
    async def create_multisig(self, multisig: Multisig) -> Multisig: ...
    async def get_multisig(self, multisig_id: str) -> Optional[Multisig]: ...
    async def get_multisig_by_owner(self, user_id: str) -> Optional[Multisig]: ...
    async def list_multisigs(self, active_only: bool = True) -> List[Multisig]: ...
    async def lock_multisig(self, multisig_id: str) -> Optional[Multisig]: ...
    async def next_transaction_index(self, multisig_id: str) -> int: ...

    # Members
    async def add_member(self, member: Member) -> Member: ...
    async def get_member(self, multisig_id: str, public_key: str) -> Optional[Member]: ...
    async def list_members(self, multisig_id: str, active_only: bool = False) -> List[Member]: ...
    # Conditional member updates; each returns False when the row no longer
    # matches (e.g. the signer acted again after being read).
    async def touch_member(self, member_id: str, at: datetime) -> bool: ...
    async def flag_member_inactive(
        self, member_id: str, since: datetime, silent_since: datetime
    ) -> bool: ...
    async def deactivate_member(
        self,
        member_id: str,
        removed_at: datetime,
        silent_since: datetime,
        reason: Optional[str] = None,
    ) -> bool: ...

    # Proposals
    async def create_proposal(self, proposal: Proposal) -> Proposal: ...
    async def get_proposal(self, proposal_id: str) -> Optional[Proposal]: ...
    async def lock_proposal(self, proposal_id: str) -> Optional[Proposal]: ...
    async def list_proposals(
        self,
        multisig_id: str,
        status: Optional[ProposalStatus] = None,
        created_before: Optional[datetime] = None,
    ) -> List[Proposal]: ...
    async def update_proposal(self, proposal: Proposal) -> None: ...

    # Approvals
    async def add_approval(self, approval: Approval) -> Approval: ...
    async def list_approvals(self, proposal_id: str) -> List[Approval]: ...


class ProposalStore(Protocol):
    def transaction(self) -> AsyncContextManager[StoreSession]: ...
