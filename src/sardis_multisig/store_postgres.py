"""PostgreSQL-backed proposal store.

Row-level locks (``SELECT ... FOR UPDATE``) serialize approve/execute per
proposal and removals per multisig. Transaction indexes come from an atomic
``UPDATE ... RETURNING`` on the owning multisig row, and the
UNIQUE(proposal_id, member_id) constraint on approvals is the final guard
against double votes.
"""

from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, List, Optional

import asyncpg

from .exceptions import DuplicateApprovalError, MultisigNotFoundError, StoreError
from .models import (
    Approval,
    ApprovalType,
    Capability,
    Member,
    Multisig,
    Proposal,
    ProposalStatus,
)
from .store import StoreSession

logger = logging.getLogger("sardis.multisig.store")


SCHEMA_SQL = """
-- =============================================================================
-- Sardis Multisig Governance Schema
-- =============================================================================

CREATE TABLE IF NOT EXISTS multisigs (
    id VARCHAR(64) PRIMARY KEY,
    name VARCHAR(255) NOT NULL DEFAULT 'Main Multisig',
    threshold INTEGER NOT NULL CHECK (threshold >= 1),
    time_lock_seconds INTEGER NOT NULL DEFAULT 0 CHECK (time_lock_seconds >= 0),
    is_active BOOLEAN NOT NULL DEFAULT TRUE,
    owner_user_id VARCHAR(64),
    next_transaction_index BIGINT NOT NULL DEFAULT 0,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE INDEX IF NOT EXISTS idx_multisigs_owner ON multisigs(owner_user_id) WHERE owner_user_id IS NOT NULL;

CREATE TABLE IF NOT EXISTS multisig_members (
    id VARCHAR(64) PRIMARY KEY,
    multisig_id VARCHAR(64) NOT NULL REFERENCES multisigs(id) ON DELETE CASCADE,
    public_key VARCHAR(128) NOT NULL,
    capabilities SMALLINT NOT NULL DEFAULT 2,
    is_active BOOLEAN NOT NULL DEFAULT TRUE,
    last_activity_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    inactive_since TIMESTAMPTZ,
    removed_at TIMESTAMPTZ,
    removal_reason TEXT,
    user_id VARCHAR(64),
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    UNIQUE(multisig_id, public_key)
);

ALTER TABLE multisig_members ADD COLUMN IF NOT EXISTS removal_reason TEXT;

CREATE INDEX IF NOT EXISTS idx_multisig_members_active ON multisig_members(multisig_id) WHERE is_active = TRUE;

CREATE TABLE IF NOT EXISTS multisig_proposals (
    id VARCHAR(64) PRIMARY KEY,
    multisig_id VARCHAR(64) NOT NULL REFERENCES multisigs(id) ON DELETE CASCADE,
    transaction_index BIGINT NOT NULL,
    proposer_key VARCHAR(128) NOT NULL,
    from_account VARCHAR(128) NOT NULL,
    to_account VARCHAR(128) NOT NULL,
    amount NUMERIC(18,8) NOT NULL CHECK (amount > 0),
    currency VARCHAR(16) NOT NULL,
    memo TEXT,
    status VARCHAR(16) NOT NULL DEFAULT 'PENDING',
    approved_at TIMESTAMPTZ,
    executed_at TIMESTAMPTZ,
    executed_transaction_hash VARCHAR(128),
    needs_reconciliation BOOLEAN NOT NULL DEFAULT FALSE,
    metadata JSONB NOT NULL DEFAULT '{}',
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    UNIQUE(multisig_id, transaction_index)
);

CREATE INDEX IF NOT EXISTS idx_multisig_proposals_status ON multisig_proposals(multisig_id, status);

CREATE TABLE IF NOT EXISTS multisig_approvals (
    id VARCHAR(64) PRIMARY KEY,
    proposal_id VARCHAR(64) NOT NULL REFERENCES multisig_proposals(id) ON DELETE CASCADE,
    member_id VARCHAR(64) NOT NULL REFERENCES multisig_members(id) ON DELETE CASCADE,
    member_key VARCHAR(128) NOT NULL,
    approval_type VARCHAR(8) NOT NULL DEFAULT 'APPROVE',
    reason TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    UNIQUE(proposal_id, member_id)
);
"""

_MULTISIG_COLUMNS = """
    id, name, threshold, time_lock_seconds, is_active, owner_user_id,
    next_transaction_index, created_at, updated_at
"""

_MEMBER_COLUMNS = """
    id, multisig_id, public_key, capabilities, is_active, last_activity_at,
    inactive_since, removed_at, removal_reason, user_id, created_at
"""

_PROPOSAL_COLUMNS = """
    id, multisig_id, transaction_index, proposer_key, from_account, to_account,
    amount, currency, memo, status, approved_at, executed_at,
    executed_transaction_hash, needs_reconciliation, metadata, created_at, updated_at
"""

_APPROVAL_COLUMNS = """
    id, proposal_id, member_id, member_key, approval_type, reason, created_at
"""


class PostgresProposalStore:
    def __init__(self, dsn: str, *, min_size: int = 1, max_size: int = 10):
        self._dsn = dsn
        self._min_size = min_size
        self._max_size = max_size
        self._pool = None

    async def _get_pool(self):
        if self._pool is None:
            dsn = self._dsn
            # Heroku/Railway style URLs
            if dsn.startswith("postgres://"):
                dsn = dsn.replace("postgres://", "postgresql://", 1)
            self._pool = await asyncpg.create_pool(
                dsn,
                min_size=self._min_size,
                max_size=self._max_size,
                command_timeout=60,
            )
        return self._pool

    async def init_schema(self) -> None:
        """Create tables directly (dev/test). Production runs migrations."""
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            await conn.execute(SCHEMA_SQL)
        logger.info("Multisig governance schema initialized")

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[StoreSession]:
        try:
            pool = await self._get_pool()
            async with pool.acquire() as conn:
                async with conn.transaction():
                    yield _PostgresSession(conn)
        except (asyncpg.PostgresError, OSError) as e:
            logger.error(f"Store transaction failed: {type(e).__name__}: {e}")
            raise StoreError(f"Database error: {e}") from e

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None


class _PostgresSession:
    def __init__(self, conn: asyncpg.Connection) -> None:
        self._conn = conn

    # ------------------------------------------------------------------
    # Multisigs
    # ------------------------------------------------------------------

    async def create_multisig(self, multisig: Multisig) -> Multisig:
        row = await self._conn.fetchrow(
            f"""
            INSERT INTO multisigs (
                id, name, threshold, time_lock_seconds, is_active,
                owner_user_id, next_transaction_index, created_at, updated_at
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
            RETURNING {_MULTISIG_COLUMNS}
            """,
            multisig.id, multisig.name, multisig.threshold, multisig.time_lock_seconds,
            multisig.is_active, multisig.owner_user_id, multisig.next_transaction_index,
            multisig.created_at, multisig.updated_at,
        )
        return _row_to_multisig(row)

    async def get_multisig(self, multisig_id: str) -> Optional[Multisig]:
        row = await self._conn.fetchrow(
            f"SELECT {_MULTISIG_COLUMNS} FROM multisigs WHERE id = $1",
            multisig_id,
        )
        return _row_to_multisig(row) if row else None

    async def get_multisig_by_owner(self, user_id: str) -> Optional[Multisig]:
        row = await self._conn.fetchrow(
            f"""
            SELECT {_MULTISIG_COLUMNS} FROM multisigs
            WHERE owner_user_id = $1 AND is_active = TRUE
            ORDER BY created_at ASC
            LIMIT 1
            """,
            user_id,
        )
        return _row_to_multisig(row) if row else None

    async def list_multisigs(self, active_only: bool = True) -> List[Multisig]:
        where = "WHERE is_active = TRUE" if active_only else ""
        rows = await self._conn.fetch(
            f"SELECT {_MULTISIG_COLUMNS} FROM multisigs {where} ORDER BY created_at ASC, id ASC"
        )
        return [_row_to_multisig(row) for row in rows]

    async def lock_multisig(self, multisig_id: str) -> Optional[Multisig]:
        row = await self._conn.fetchrow(
            f"SELECT {_MULTISIG_COLUMNS} FROM multisigs WHERE id = $1 FOR UPDATE",
            multisig_id,
        )
        return _row_to_multisig(row) if row else None

    async def next_transaction_index(self, multisig_id: str) -> int:
        value = await self._conn.fetchval(
            """
            UPDATE multisigs
            SET next_transaction_index = next_transaction_index + 1, updated_at = NOW()
            WHERE id = $1
            RETURNING next_transaction_index
            """,
            multisig_id,
        )
        if value is None:
            raise MultisigNotFoundError("Multisig", multisig_id)
        return int(value)

    # ------------------------------------------------------------------
    # Members
    # ------------------------------------------------------------------

    async def add_member(self, member: Member) -> Member:
        row = await self._conn.fetchrow(
            f"""
            INSERT INTO multisig_members (
                id, multisig_id, public_key, capabilities, is_active,
                last_activity_at, inactive_since, removed_at, removal_reason, user_id, created_at
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
            RETURNING {_MEMBER_COLUMNS}
            """,
            member.id, member.multisig_id, member.public_key, int(member.capabilities),
            member.is_active, member.last_activity_at, member.inactive_since,
            member.removed_at, member.removal_reason, member.user_id, member.created_at,
        )
        return _row_to_member(row)

    async def get_member(self, multisig_id: str, public_key: str) -> Optional[Member]:
        row = await self._conn.fetchrow(
            f"""
            SELECT {_MEMBER_COLUMNS} FROM multisig_members
            WHERE multisig_id = $1 AND public_key = $2
            """,
            multisig_id, public_key,
        )
        return _row_to_member(row) if row else None

    async def list_members(self, multisig_id: str, active_only: bool = False) -> List[Member]:
        query = f"SELECT {_MEMBER_COLUMNS} FROM multisig_members WHERE multisig_id = $1"
        if active_only:
            query += " AND is_active = TRUE"
        query += " ORDER BY created_at ASC, id ASC"
        rows = await self._conn.fetch(query, multisig_id)
        return [_row_to_member(row) for row in rows]

    async def touch_member(self, member_id: str, at: datetime) -> bool:
        result = await self._conn.execute(
            """
            UPDATE multisig_members
            SET last_activity_at = $2, inactive_since = NULL
            WHERE id = $1 AND is_active = TRUE
            """,
            member_id, at,
        )
        return result == "UPDATE 1"

    async def flag_member_inactive(
        self, member_id: str, since: datetime, silent_since: datetime
    ) -> bool:
        result = await self._conn.execute(
            """
            UPDATE multisig_members
            SET inactive_since = $2
            WHERE id = $1
              AND is_active = TRUE
              AND inactive_since IS NULL
              AND last_activity_at <= $3
            """,
            member_id, since, silent_since,
        )
        return result == "UPDATE 1"

    async def deactivate_member(
        self,
        member_id: str,
        removed_at: datetime,
        silent_since: datetime,
        reason: Optional[str] = None,
    ) -> bool:
        result = await self._conn.execute(
            """
            UPDATE multisig_members
            SET is_active = FALSE, removed_at = $2, removal_reason = $4
            WHERE id = $1
              AND is_active = TRUE
              AND inactive_since IS NOT NULL
              AND last_activity_at <= $3
            """,
            member_id, removed_at, silent_since, reason,
        )
        return result == "UPDATE 1"

    # ------------------------------------------------------------------
    # Proposals
    # ------------------------------------------------------------------

    async def create_proposal(self, proposal: Proposal) -> Proposal:
        row = await self._conn.fetchrow(
            f"""
            INSERT INTO multisig_proposals (
                id, multisig_id, transaction_index, proposer_key, from_account,
                to_account, amount, currency, memo, status, approved_at,
                executed_at, executed_transaction_hash, needs_reconciliation,
                metadata, created_at, updated_at
            ) VALUES (
                $1, $2, $3, $4, $5,
                $6, $7, $8, $9, $10, $11,
                $12, $13, $14,
                $15::jsonb, $16, $17
            )
            RETURNING {_PROPOSAL_COLUMNS}
            """,
            proposal.id, proposal.multisig_id, proposal.transaction_index,
            proposal.proposer_key, proposal.from_account, proposal.to_account,
            proposal.amount, proposal.currency, proposal.memo, proposal.status.value,
            proposal.approved_at, proposal.executed_at, proposal.executed_transaction_hash,
            proposal.needs_reconciliation, json.dumps(proposal.metadata),
            proposal.created_at, proposal.updated_at,
        )
        return _row_to_proposal(row)

    async def get_proposal(self, proposal_id: str) -> Optional[Proposal]:
        row = await self._conn.fetchrow(
            f"SELECT {_PROPOSAL_COLUMNS} FROM multisig_proposals WHERE id = $1",
            proposal_id,
        )
        return _row_to_proposal(row) if row else None

    async def lock_proposal(self, proposal_id: str) -> Optional[Proposal]:
        row = await self._conn.fetchrow(
            f"SELECT {_PROPOSAL_COLUMNS} FROM multisig_proposals WHERE id = $1 FOR UPDATE",
            proposal_id,
        )
        return _row_to_proposal(row) if row else None

    async def list_proposals(
        self,
        multisig_id: str,
        status: Optional[ProposalStatus] = None,
        created_before: Optional[datetime] = None,
    ) -> List[Proposal]:
        conditions = ["multisig_id = $1"]
        values: List[Any] = [multisig_id]
        param_idx = 2

        if status is not None:
            conditions.append(f"status = ${param_idx}")
            values.append(status.value)
            param_idx += 1

        if created_before is not None:
            conditions.append(f"created_at < ${param_idx}")
            values.append(created_before)
            param_idx += 1

        rows = await self._conn.fetch(
            f"""
            SELECT {_PROPOSAL_COLUMNS} FROM multisig_proposals
            WHERE {' AND '.join(conditions)}
            ORDER BY transaction_index ASC
            """,
            *values,
        )
        return [_row_to_proposal(row) for row in rows]

    async def update_proposal(self, proposal: Proposal) -> None:
        result = await self._conn.execute(
            """
            UPDATE multisig_proposals
            SET status = $2, approved_at = $3, executed_at = $4,
                executed_transaction_hash = $5, needs_reconciliation = $6,
                metadata = $7::jsonb, updated_at = $8
            WHERE id = $1
            """,
            proposal.id, proposal.status.value, proposal.approved_at, proposal.executed_at,
            proposal.executed_transaction_hash, proposal.needs_reconciliation,
            json.dumps(proposal.metadata), proposal.updated_at,
        )
        if result.endswith(" 0"):
            raise MultisigNotFoundError("Proposal", proposal.id)

    # ------------------------------------------------------------------
    # Approvals
    # ------------------------------------------------------------------

    async def add_approval(self, approval: Approval) -> Approval:
        try:
            # Savepoint so a duplicate does not poison the outer transaction.
            async with self._conn.transaction():
                row = await self._conn.fetchrow(
                    f"""
                    INSERT INTO multisig_approvals (
                        id, proposal_id, member_id, member_key, approval_type, reason, created_at
                    ) VALUES ($1, $2, $3, $4, $5, $6, $7)
                    RETURNING {_APPROVAL_COLUMNS}
                    """,
                    approval.id, approval.proposal_id, approval.member_id, approval.member_key,
                    approval.type.value, approval.reason, approval.created_at,
                )
        except asyncpg.UniqueViolationError as e:
            raise DuplicateApprovalError(approval.proposal_id, approval.member_id) from e
        return _row_to_approval(row)

    async def list_approvals(self, proposal_id: str) -> List[Approval]:
        rows = await self._conn.fetch(
            f"""
            SELECT {_APPROVAL_COLUMNS} FROM multisig_approvals
            WHERE proposal_id = $1
            ORDER BY created_at ASC, id ASC
            """,
            proposal_id,
        )
        return [_row_to_approval(row) for row in rows]


def _row_to_multisig(row) -> Multisig:
    """Convert database row to Multisig object."""
    return Multisig(
        id=row['id'],
        name=row['name'],
        threshold=row['threshold'],
        time_lock_seconds=row['time_lock_seconds'],
        is_active=row['is_active'],
        owner_user_id=row['owner_user_id'],
        next_transaction_index=int(row['next_transaction_index']),
        created_at=row['created_at'],
        updated_at=row['updated_at'],
    )


def _row_to_member(row) -> Member:
    """Convert database row to Member object."""
    return Member(
        id=row['id'],
        multisig_id=row['multisig_id'],
        public_key=row['public_key'],
        capabilities=Capability(row['capabilities']),
        is_active=row['is_active'],
        last_activity_at=row['last_activity_at'],
        inactive_since=row['inactive_since'],
        removed_at=row['removed_at'],
        removal_reason=row['removal_reason'],
        user_id=row['user_id'],
        created_at=row['created_at'],
    )


def _row_to_proposal(row) -> Proposal:
    """Convert database row to Proposal object."""
    metadata = row['metadata']
    if isinstance(metadata, str):
        metadata = json.loads(metadata)
    return Proposal(
        id=row['id'],
        multisig_id=row['multisig_id'],
        transaction_index=int(row['transaction_index']),
        proposer_key=row['proposer_key'],
        from_account=row['from_account'],
        to_account=row['to_account'],
        amount=row['amount'],
        currency=row['currency'],
        memo=row['memo'],
        status=ProposalStatus(row['status']),
        approved_at=row['approved_at'],
        executed_at=row['executed_at'],
        executed_transaction_hash=row['executed_transaction_hash'],
        needs_reconciliation=row['needs_reconciliation'],
        metadata=metadata or {},
        created_at=row['created_at'],
        updated_at=row['updated_at'],
    )


def _row_to_approval(row) -> Approval:
    """Convert database row to Approval object."""
    return Approval(
        id=row['id'],
        proposal_id=row['proposal_id'],
        member_id=row['member_id'],
        member_key=row['member_key'],
        type=ApprovalType(row['approval_type']),
        reason=row['reason'],
        created_at=row['created_at'],
    )
