"""
Execution gateway: the boundary between governance and the ledger.

The engine only decides *when* a transfer may run; the gateway performs it.
Implementations must raise:
- GatewayRejectedError when the ledger confirms nothing moved
- GatewayOutcomeUnknownError when the submission may have landed

Anything else escaping ``submit`` is treated as an unknown outcome.
"""
from __future__ import annotations

import asyncio
import logging
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Protocol, Tuple

from .exceptions import GatewayOutcomeUnknownError, GatewayRejectedError
from .models import Proposal

logger = logging.getLogger("sardis.multisig.gateway")


class ExecutionGateway(Protocol):
    """Protocol for submitting authorized transfers to the ledger."""

    async def submit(self, proposal: Proposal) -> str:
        """Submit the transfer; returns the ledger transaction hash."""
        ...


@dataclass
class Submission:
    proposal_id: str
    multisig_id: str
    transaction_index: int
    transaction_hash: str
    submitted_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class SimulatedExecutionGateway:
    """
    Simulated ledger for dev/sandbox (``chain_mode = "simulated"``).

    Submissions are idempotent per (multisig, transaction index): resubmitting
    the same proposal returns the original hash instead of moving funds twice.
    Failures can be scripted with ``fail_next`` for testing.
    """

    def __init__(self, latency_seconds: float = 0.0):
        self._latency = latency_seconds
        self._submissions: Dict[Tuple[str, int], Submission] = {}
        self._scripted_failures: List[Exception] = []
        self.calls = 0

    def fail_next(self, error: Exception) -> None:
        """Make the next submit() raise ``error``."""
        self._scripted_failures.append(error)

    def reject_next(self, reason: str = "insufficient funds") -> None:
        self.fail_next(GatewayRejectedError(reason))

    def time_out_next(self, reason: str = "ledger confirmation timed out") -> None:
        self.fail_next(GatewayOutcomeUnknownError(reason))

    @property
    def submissions(self) -> List[Submission]:
        return list(self._submissions.values())

    def get_submission(self, multisig_id: str, transaction_index: int) -> Optional[Submission]:
        return self._submissions.get((multisig_id, transaction_index))

    async def submit(self, proposal: Proposal) -> str:
        self.calls += 1
        if self._latency:
            await asyncio.sleep(self._latency)

        if self._scripted_failures:
            raise self._scripted_failures.pop(0)

        key = (proposal.multisig_id, proposal.transaction_index)
        existing = self._submissions.get(key)
        if existing is not None:
            logger.warning(
                f"Duplicate submission for multisig {proposal.multisig_id} "
                f"index {proposal.transaction_index}; returning original hash"
            )
            return existing.transaction_hash

        tx_hash = f"0x{secrets.token_hex(32)}"
        self._submissions[key] = Submission(
            proposal_id=proposal.id,
            multisig_id=proposal.multisig_id,
            transaction_index=proposal.transaction_index,
            transaction_hash=tx_hash,
        )
        logger.info(
            f"Simulated transfer of {proposal.amount} {proposal.currency} "
            f"from {proposal.from_account} to {proposal.to_account}: {tx_hash}"
        )
        return tx_hash


__all__ = [
    "ExecutionGateway",
    "Submission",
    "SimulatedExecutionGateway",
]
