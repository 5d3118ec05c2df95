"""
Tests for SimulatedExecutionGateway.
"""
from __future__ import annotations

from decimal import Decimal

import pytest

from sardis_multisig.exceptions import GatewayOutcomeUnknownError, GatewayRejectedError
from sardis_multisig.gateway import SimulatedExecutionGateway
from sardis_multisig.models import Proposal


def _proposal(index: int = 1, proposal_id: str = "prop_1") -> Proposal:
    return Proposal(
        id=proposal_id,
        multisig_id="msig_1",
        transaction_index=index,
        proposer_key="A",
        from_account="w1",
        to_account="w2",
        amount=Decimal("5"),
        currency="USDC",
    )


class TestSimulatedExecutionGateway:
    """Tests for the simulated ledger."""

    @pytest.mark.asyncio
    async def test_submit_returns_hash(self):
        gateway = SimulatedExecutionGateway()

        tx_hash = await gateway.submit(_proposal())

        assert tx_hash.startswith("0x")
        assert len(tx_hash) == 66
        assert gateway.get_submission("msig_1", 1).transaction_hash == tx_hash

    @pytest.mark.asyncio
    async def test_idempotent_per_transaction_index(self):
        gateway = SimulatedExecutionGateway()

        first = await gateway.submit(_proposal())
        again = await gateway.submit(_proposal())
        other = await gateway.submit(_proposal(index=2, proposal_id="prop_2"))

        assert first == again
        assert other != first
        assert len(gateway.submissions) == 2
        assert gateway.calls == 3

    @pytest.mark.asyncio
    async def test_scripted_failures(self):
        gateway = SimulatedExecutionGateway()
        gateway.reject_next("insufficient funds")
        gateway.time_out_next()

        with pytest.raises(GatewayRejectedError):
            await gateway.submit(_proposal())
        with pytest.raises(GatewayOutcomeUnknownError):
            await gateway.submit(_proposal())

        assert gateway.submissions == []
        assert (await gateway.submit(_proposal())).startswith("0x")
