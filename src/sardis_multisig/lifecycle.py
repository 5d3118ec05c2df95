"""
Signer lifecycle management for multisig groups.

Signers move through three states:
- active: participated within the inactivity threshold
- flagged inactive: silent past the inactivity threshold (soft; still counts
  toward quorum)
- removed: silent past the removal threshold and deactivated because removal
  kept at least ``threshold + 1`` active signers

Activity is recorded by the ProposalEngine on every propose/approve/reject/
execute, so callers never have to remember to do it. Removed signers are
deactivated, never deleted, so their votes remain auditable.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Tuple

from . import quorum
from .config import GovernanceSettings
from .exceptions import MemberInactiveError, MultisigNotFoundError, NotAMemberError
from .logging_config import LogContext, mask_key
from .models import (
    DeferredRemoval,
    InactiveMember,
    Member,
    RemovalReport,
    SignerHealth,
    utc_now,
)
from .store import ProposalStore, StoreSession

logger = logging.getLogger("sardis.multisig.lifecycle")


class SignerLifecycleManager:
    """Classifies signers as active/inactive/removable and applies safe removals."""

    def __init__(
        self,
        store: ProposalStore,
        settings: Optional[GovernanceSettings] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._store = store
        self._settings = settings or GovernanceSettings()
        self._clock = clock

    @property
    def inactivity_threshold_hours(self) -> int:
        return self._settings.inactivity_threshold_hours

    @property
    def removal_threshold_hours(self) -> int:
        return self._settings.removal_threshold_hours

    def _removal_hours(self, override: Optional[int]) -> int:
        return self.removal_threshold_hours if override is None else override

    # ------------------------------------------------------------------
    # Activity
    # ------------------------------------------------------------------

    async def record_activity(
        self,
        multisig_id: str,
        member_key: str,
        now: Optional[datetime] = None,
        session: Optional[StoreSession] = None,
    ) -> bool:
        """Refresh ``last_activity_at`` and clear any inactivity flag.

        Runs inside ``session`` when given so the refresh commits together
        with the action that caused it. Returns False for unknown or removed
        members.
        """
        now = now or self._clock()
        if session is not None:
            return await self._touch(session, multisig_id, member_key, now)
        async with self._store.transaction() as tx:
            return await self._touch(tx, multisig_id, member_key, now)

    async def _touch(
        self, session: StoreSession, multisig_id: str, member_key: str, now: datetime
    ) -> bool:
        member = await session.get_member(multisig_id, member_key)
        if member is None:
            return False
        touched = await session.touch_member(member.id, now)
        if touched and member.inactive_since is not None:
            logger.info(
                f"Signer {mask_key(member_key)} resumed activity in multisig {multisig_id}; "
                "inactivity flag cleared"
            )
        return touched

    # ------------------------------------------------------------------
    # Inactivity scan
    # ------------------------------------------------------------------

    async def scan_for_inactivity(
        self,
        now: Optional[datetime] = None,
        inactivity_threshold_hours: Optional[int] = None,
        multisig_id: Optional[str] = None,
    ) -> List[InactiveMember]:
        """Flag active members silent for at least the inactivity threshold.

        Flagging is a soft state: flagged members still count toward quorum
        and nothing is removed here. Calling this again at the same instant
        flags nothing new.

        Args:
            now: Evaluation time (default: clock)
            inactivity_threshold_hours: Override the configured threshold
            multisig_id: Limit the scan to one multisig (default: all active)

        Returns:
            Every currently-flagged silent member, with ``newly_flagged`` set
            for the ones flagged by this call
        """
        now = now or self._clock()
        hours = (
            self.inactivity_threshold_hours
            if inactivity_threshold_hours is None
            else inactivity_threshold_hours
        )
        silent_since = now - timedelta(hours=hours)

        async with self._store.transaction() as tx:
            if multisig_id is not None:
                multisig_ids = [multisig_id]
            else:
                multisig_ids = [m.id for m in await tx.list_multisigs(active_only=True)]

            flagged: List[InactiveMember] = []
            for ms_id in multisig_ids:
                for member in await tx.list_members(ms_id, active_only=True):
                    if member.last_activity_at > silent_since:
                        continue

                    newly_flagged = False
                    inactive_since = member.inactive_since
                    if inactive_since is None:
                        newly_flagged = await tx.flag_member_inactive(member.id, now, silent_since)
                        if not newly_flagged:
                            continue
                        inactive_since = now

                    flagged.append(InactiveMember(
                        member_id=member.id,
                        multisig_id=ms_id,
                        public_key=member.public_key,
                        last_activity_at=member.last_activity_at,
                        inactive_since=inactive_since,
                        hours_since_activity=member.hours_since_activity(now),
                        newly_flagged=newly_flagged,
                    ))

        newly = [m for m in flagged if m.newly_flagged]
        for m in newly:
            logger.info(
                f"Signer {mask_key(m.public_key)} in multisig {m.multisig_id} flagged inactive "
                f"({m.hours_since_activity:.1f}h since last activity)"
            )
        if flagged:
            logger.info(f"Inactivity scan: {len(flagged)} flagged signer(s), {len(newly)} new")
        else:
            logger.debug("Inactivity scan: no inactive signers found")

        return flagged

    # ------------------------------------------------------------------
    # Removal
    # ------------------------------------------------------------------

    async def removal_candidates(
        self,
        multisig_id: str,
        removal_threshold_hours: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> List[Member]:
        """Flagged members silent for at least the removal threshold.

        Ordered oldest-inactive first, ties broken by member id.
        """
        now = now or self._clock()
        async with self._store.transaction() as tx:
            members = await tx.list_members(multisig_id, active_only=True)
        return self._candidates(members, removal_threshold_hours, now)

    def _candidates(
        self,
        active_members: List[Member],
        removal_threshold_hours: Optional[int],
        now: datetime,
    ) -> List[Member]:
        hours = self._removal_hours(removal_threshold_hours)
        silent_since = now - timedelta(hours=hours)
        candidates = [
            m for m in active_members
            if m.is_flagged_inactive and m.last_activity_at <= silent_since
        ]
        candidates.sort(key=lambda m: (m.last_activity_at, m.id))
        return candidates

    async def apply_removals(
        self,
        multisig_id: str,
        now: Optional[datetime] = None,
        removal_threshold_hours: Optional[int] = None,
    ) -> RemovalReport:
        """Deactivate removal candidates without breaking quorum feasibility.

        At most ``can_remove(active, threshold)`` members are deactivated per
        pass; the remaining candidates are reported as deferred and wait for
        a later pass (or clear themselves by acting again).
        """
        now = now or self._clock()
        hours = self._removal_hours(removal_threshold_hours)
        silent_since = now - timedelta(hours=hours)
        reason = f"Inactive for {hours}+ hours"

        with LogContext(multisig_id=multisig_id):
            async with self._store.transaction() as tx:
                multisig = await tx.lock_multisig(multisig_id)
                if multisig is None:
                    raise MultisigNotFoundError("Multisig", multisig_id)

                active = await tx.list_members(multisig_id, active_only=True)
                candidates = self._candidates(active, hours, now)
                max_removable = quorum.can_remove(len(active), multisig.threshold)

                removed: List[Member] = []
                deferred: List[DeferredRemoval] = []
                for member in candidates:
                    if len(removed) >= max_removable:
                        deferred.append(DeferredRemoval(
                            member_id=member.id,
                            public_key=member.public_key,
                        ))
                        continue
                    if await tx.deactivate_member(member.id, now, silent_since, reason):
                        member.is_active = False
                        member.removed_at = now
                        member.removal_reason = reason
                        removed.append(member)

            report = RemovalReport(
                multisig_id=multisig_id,
                threshold=multisig.threshold,
                active_before=len(active),
                active_after=len(active) - len(removed),
                max_removable=max_removable,
                removed=removed,
                deferred=deferred,
            )

            for member in removed:
                logger.info(
                    f"Removed inactive signer {mask_key(member.public_key)} from multisig {multisig_id} "
                    f"(inactive for {member.hours_since_activity(now):.1f}h)"
                )
            if deferred:
                logger.warning(
                    f"Deferred removal of {len(deferred)} inactive signer(s) from multisig {multisig_id}: "
                    f"{report.active_after} active, threshold {multisig.threshold} "
                    "(REMOVAL_WOULD_BREAK_QUORUM)"
                )

        return report

    async def remove_member(
        self,
        multisig_id: str,
        public_key: str,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> RemovalReport:
        """
        Remove one inactive signer on request.

        The signer must already be flagged inactive and silent for at least
        the removal threshold, and the multisig must keep ``threshold + 1``
        active signers afterwards. Otherwise nothing changes and the report
        carries a single deferral saying why.

        Raises:
            MultisigNotFoundError: unknown multisig
            NotAMemberError: key never belonged to the multisig
            MemberInactiveError: signer was already removed
        """
        now = now or self._clock()
        hours = self.removal_threshold_hours
        silent_since = now - timedelta(hours=hours)
        reason = reason or f"Inactive for {hours}+ hours"

        with LogContext(multisig_id=multisig_id, member_key=public_key):
            async with self._store.transaction() as tx:
                multisig = await tx.lock_multisig(multisig_id)
                if multisig is None:
                    raise MultisigNotFoundError("Multisig", multisig_id)
                member = await tx.get_member(multisig_id, public_key)
                if member is None:
                    raise NotAMemberError(multisig_id, public_key)
                if not member.is_active:
                    raise MemberInactiveError(public_key)

                active = await tx.list_members(multisig_id, active_only=True)
                max_removable = quorum.can_remove(len(active), multisig.threshold)

                removed: List[Member] = []
                deferral: Optional[str] = None
                if not (member.is_flagged_inactive and member.last_activity_at <= silent_since):
                    deferral = "NOT_ELIGIBLE_FOR_REMOVAL"
                elif max_removable < 1:
                    deferral = "REMOVAL_WOULD_BREAK_QUORUM"
                elif await tx.deactivate_member(member.id, now, silent_since, reason):
                    member.is_active = False
                    member.removed_at = now
                    member.removal_reason = reason
                    removed.append(member)
                else:
                    deferral = "NOT_ELIGIBLE_FOR_REMOVAL"

            deferred: List[DeferredRemoval] = []
            if deferral is None:
                logger.info(
                    f"Removed signer {mask_key(public_key)} from multisig {multisig_id}: {reason}"
                )
            else:
                deferred.append(DeferredRemoval(
                    member_id=member.id,
                    public_key=public_key,
                    reason=deferral,
                ))
                logger.warning(
                    f"Refused removal of signer {mask_key(public_key)} from multisig "
                    f"{multisig_id} ({deferral})"
                )

        return RemovalReport(
            multisig_id=multisig_id,
            threshold=multisig.threshold,
            active_before=len(active),
            active_after=len(active) - len(removed),
            max_removable=max_removable,
            removed=removed,
            deferred=deferred,
        )

    # ------------------------------------------------------------------
    # Health & history
    # ------------------------------------------------------------------

    async def get_signer_health(
        self,
        multisig_id: str,
        now: Optional[datetime] = None,
    ) -> SignerHealth:
        """Summarize active/inactive/removal-eligible signers with warnings."""
        now = now or self._clock()
        async with self._store.transaction() as tx:
            multisig = await tx.get_multisig(multisig_id)
            if multisig is None:
                raise MultisigNotFoundError("Multisig", multisig_id)
            members = await tx.list_members(multisig_id)

        active = [m for m in members if m.is_active]
        flagged = [m for m in active if m.is_flagged_inactive]
        eligible = self._candidates(active, None, now)
        max_removable = quorum.can_remove(len(active), multisig.threshold)

        warnings: List[str] = []
        is_healthy = True

        if len(active) < multisig.threshold:
            is_healthy = False
            warnings.append(
                f"Not enough active members. Need {multisig.threshold}, have {len(active)}"
            )

        if flagged:
            warnings.append(f"{len(flagged)} members are inactive and may be removed")

        if len(eligible) > max_removable:
            warnings.append(
                f"{len(eligible) - max_removable} removal(s) deferred to preserve quorum"
            )

        if len(active) == multisig.threshold:
            warnings.append("Multisig is at minimum threshold. Consider adding more members")

        return SignerHealth(
            multisig_id=multisig_id,
            threshold=multisig.threshold,
            total_members=len(members),
            active_members=len(active),
            flagged_inactive=len(flagged),
            removal_eligible=len(eligible),
            removed_members=len(members) - len(active),
            max_removable=max_removable,
            is_healthy=is_healthy,
            warnings=warnings,
        )

    async def can_transaction_proceed(self, multisig_id: str) -> Tuple[bool, str]:
        """Check whether enough active signers exist to reach the threshold."""
        async with self._store.transaction() as tx:
            multisig = await tx.get_multisig(multisig_id)
            if multisig is None:
                raise MultisigNotFoundError("Multisig", multisig_id)
            active = await tx.list_members(multisig_id, active_only=True)

        if len(active) >= multisig.threshold:
            return True, "OK"
        return False, (
            f"Not enough active members. Need {multisig.threshold}, have {len(active)}"
        )

    async def get_removal_history(
        self,
        multisig_id: str,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Member]:
        """Removed signers, most recent removal first."""
        async with self._store.transaction() as tx:
            members = await tx.list_members(multisig_id)
        removed = [m for m in members if not m.is_active and m.removed_at is not None]
        removed.sort(key=lambda m: (m.removed_at, m.id), reverse=True)
        return removed[offset:offset + limit]
