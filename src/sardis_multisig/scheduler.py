"""Periodic governance sweep on APScheduler.

One interval job runs :meth:`GovernanceScheduler.run_sweep`, which for every
active multisig flags silent signers, deactivates the ones that can be
removed without endangering quorum, and cancels stale proposals.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Callable, Optional

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from .config import GovernanceSettings
from .engine import ProposalEngine
from .lifecycle import SignerLifecycleManager
from .logging_config import LogContext
from .models import MultisigSweepResult, SweepReport, utc_now
from .store import ProposalStore

logger = logging.getLogger("sardis.multisig.scheduler")

SWEEP_JOB_ID = "multisig_governance_sweep"


class GovernanceScheduler:
    """Runs the signer-lifecycle and stale-proposal sweep on an interval."""

    def __init__(
        self,
        store: ProposalStore,
        engine: ProposalEngine,
        lifecycle: Optional[SignerLifecycleManager] = None,
        settings: Optional[GovernanceSettings] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._store = store
        self._engine = engine
        self._lifecycle = lifecycle or engine.lifecycle
        self._settings = settings or GovernanceSettings()
        self._clock = clock
        self._started = False
        self._sweep_lock = asyncio.Lock()

        job_defaults = {
            "coalesce": True,
            "max_instances": 1,
            "misfire_grace_time": 60 * 5,
        }
        self._scheduler = AsyncIOScheduler(
            executors={"default": AsyncIOExecutor()},
            job_defaults=job_defaults,
            timezone=self._settings.scheduler_timezone,
        )

    async def run_sweep(self, now: Optional[datetime] = None) -> SweepReport:
        """
        Run one governance sweep.

        Steps per active multisig:
        1. Flag signers silent past the inactivity threshold
        2. Apply safe removals when anyone is flagged
        3. Cancel PENDING proposals older than ``proposal_ttl_hours``

        A failure in one multisig is logged and recorded in
        ``SweepReport.errors``; the sweep continues with the next one.
        """
        now = now or self._clock()
        report = SweepReport(started_at=now)

        async with self._sweep_lock:
            logger.debug("Starting governance sweep")

            async with self._store.transaction() as tx:
                multisigs = await tx.list_multisigs(active_only=True)

            for multisig in multisigs:
                with LogContext(multisig_id=multisig.id):
                    try:
                        report.results[multisig.id] = await self._sweep_multisig(multisig.id, now)
                    except Exception as e:
                        logger.error(
                            f"Governance sweep failed for multisig {multisig.id}: {e}",
                            exc_info=True,
                        )
                        report.errors[multisig.id] = f"{type(e).__name__}: {e}"

        if report.flagged_count or report.removed_count or report.expired_count or report.errors:
            logger.info(
                f"Governance sweep completed: {len(multisigs)} multisig(s), "
                f"{report.flagged_count} flagged, {report.removed_count} removed, "
                f"{report.deferred_count} deferred, {report.expired_count} proposal(s) expired, "
                f"{len(report.errors)} error(s)"
            )
        else:
            logger.debug(f"Governance sweep completed: {len(multisigs)} multisig(s), nothing to do")
        return report

    async def _sweep_multisig(self, multisig_id: str, now: datetime) -> MultisigSweepResult:
        result = MultisigSweepResult(multisig_id=multisig_id)
        result.flagged = await self._lifecycle.scan_for_inactivity(now=now, multisig_id=multisig_id)
        if result.flagged:
            result.removal = await self._lifecycle.apply_removals(multisig_id, now=now)
        if self._settings.proposal_ttl_hours > 0:
            result.expired_proposals = await self._engine.expire_stale_proposals(multisig_id, now=now)
        return result

    async def trigger_now(self) -> SweepReport:
        """Run the sweep immediately, outside the interval."""
        logger.info("Manual governance sweep triggered")
        return await self.run_sweep()

    async def _scheduled_sweep(self) -> None:
        await self.run_sweep()

    async def start(self) -> None:
        """Register the sweep job and start the scheduler."""
        if self._started:
            return

        self._scheduler.add_job(
            self._scheduled_sweep,
            "interval",
            id=SWEEP_JOB_ID,
            seconds=self._settings.sweep_interval_seconds,
            replace_existing=True,
        )
        self._scheduler.start()
        self._started = True
        logger.info(
            f"Governance scheduler started (sweep every {self._settings.sweep_interval_seconds}s)"
        )

    async def shutdown(self, wait: bool = True) -> None:
        """Stop the scheduler gracefully."""
        if not self._started:
            return

        self._scheduler.shutdown(wait=wait)
        self._started = False
        logger.info("Governance scheduler stopped")

    @property
    def is_running(self) -> bool:
        return self._started and bool(self._scheduler.running)

    def next_run_time(self) -> Optional[datetime]:
        job = self._scheduler.get_job(SWEEP_JOB_ID)
        return job.next_run_time if job else None
