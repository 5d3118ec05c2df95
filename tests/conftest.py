"""
Pytest configuration for sardis-multisig tests.
"""
from __future__ import annotations

import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

# Add package source to path
package_src = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(package_src))

# Set test environment
os.environ.setdefault("SARDIS_MULTISIG_ENVIRONMENT", "dev")
os.environ.setdefault("SARDIS_MULTISIG_JSON_LOGS", "false")

from sardis_multisig import (  # noqa: E402
    Capability,
    GovernanceSettings,
    InMemoryProposalStore,
    ProposalEngine,
    SignerLifecycleManager,
    SimulatedExecutionGateway,
)

T0 = datetime(2025, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class FrozenClock:
    """Deterministic clock; advance explicitly."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def settings():
    return GovernanceSettings(
        database_url="",
        allowed_currencies=["USDC", "SOL"],
        inactivity_threshold_hours=24,
        removal_threshold_hours=48,
        proposal_ttl_hours=168,
    )


@pytest.fixture
def store():
    return InMemoryProposalStore()


@pytest.fixture
def gateway():
    return SimulatedExecutionGateway()


@pytest.fixture
def lifecycle(store, settings, clock):
    return SignerLifecycleManager(store, settings, clock)


@pytest.fixture
def engine(store, gateway, lifecycle, settings, clock):
    return ProposalEngine(store, gateway, lifecycle=lifecycle, settings=settings, clock=clock)


@pytest.fixture
def make_multisig(engine):
    """Factory for a multisig whose members A.. hold ALL capabilities."""

    async def _make(
        threshold: int = 2,
        keys=("A", "B", "C"),
        time_lock_seconds: int = 0,
        capabilities=Capability.ALL,
        owner_user_id=None,
    ):
        return await engine.create_multisig(
            name="treasury",
            threshold=threshold,
            members=[(key, capabilities) for key in keys],
            time_lock_seconds=time_lock_seconds,
            owner_user_id=owner_user_id,
        )

    return _make


@pytest.fixture
def propose(engine):
    """Factory for a 100 USDC proposal from ``proposer_key``."""

    async def _propose(multisig_id: str, proposer_key: str = "A", amount="100"):
        return await engine.create_proposal(
            multisig_id=multisig_id,
            from_account="wallet_treasury",
            to_account="wallet_vendor",
            amount=amount,
            currency="USDC",
            memo=None,
            proposer_key=proposer_key,
        )

    return _propose
