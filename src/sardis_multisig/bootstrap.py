"""
Service wiring for multisig governance.

Builds the store, gateway, engine, lifecycle manager and scheduler from
GovernanceSettings:
- ``postgresql://`` / ``postgres://`` database URLs use PostgresProposalStore
- an empty URL (or ``memory://``) uses the in-memory store, outside prod only
- dev and sandbox create the schema on startup; prod expects migrations

Usage:
    services = await init_governance(load_settings(), gateway=my_gateway)
    await services.scheduler.start()
    ...
    await services.close()
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from .config import GovernanceSettings, load_settings
from .engine import ProposalEngine
from .exceptions import ConfigurationError
from .gateway import ExecutionGateway, SimulatedExecutionGateway
from .lifecycle import SignerLifecycleManager
from .logging_config import setup_logging
from .models import utc_now
from .scheduler import GovernanceScheduler
from .store import ProposalStore
from .store_memory import InMemoryProposalStore
from .store_postgres import PostgresProposalStore

logger = logging.getLogger("sardis.multisig.bootstrap")

POSTGRES_SCHEMES = ("postgresql://", "postgres://")


@dataclass
class GovernanceServices:
    """Wired governance components sharing one store and clock."""
    settings: GovernanceSettings
    store: ProposalStore
    gateway: ExecutionGateway
    lifecycle: SignerLifecycleManager
    engine: ProposalEngine
    scheduler: GovernanceScheduler

    async def close(self) -> None:
        await self.scheduler.shutdown()
        if isinstance(self.store, PostgresProposalStore):
            await self.store.close()


def create_store(settings: GovernanceSettings) -> ProposalStore:
    """Pick the proposal store for ``settings.database_url``.

    Raises:
        ConfigurationError: unsupported URL, or no PostgreSQL URL in prod
    """
    url = settings.database_url
    if url.startswith(POSTGRES_SCHEMES):
        return PostgresProposalStore(url)
    if url and url != "memory://":
        scheme = url.split(":", 1)[0]
        raise ConfigurationError(
            f"Unsupported database_url scheme '{scheme}'",
            details={"environment": settings.environment},
        )
    if settings.environment == "prod":
        raise ConfigurationError(
            "A PostgreSQL database_url is required in prod",
            details={"environment": settings.environment},
        )
    logger.warning(
        f"No database_url configured; using in-memory proposal store ({settings.environment})"
    )
    return InMemoryProposalStore()


async def init_governance(
    settings: Optional[GovernanceSettings] = None,
    gateway: Optional[ExecutionGateway] = None,
    clock: Callable[[], datetime] = utc_now,
    configure_logging: bool = True,
) -> GovernanceServices:
    """
    Build every governance component from settings.

    Args:
        settings: Governance settings (default: ``load_settings()``)
        gateway: Ledger boundary; required in prod, simulated elsewhere
        clock: Returns the current UTC time
        configure_logging: Apply ``log_level``/``json_logs`` to the root logger

    Returns:
        GovernanceServices; the scheduler is not started
    """
    settings = settings or load_settings()
    if configure_logging:
        setup_logging(level=settings.log_level, json_format=settings.json_logs)

    if gateway is None:
        if settings.environment == "prod":
            raise ConfigurationError(
                "An execution gateway is required in prod",
                details={"environment": settings.environment},
            )
        gateway = SimulatedExecutionGateway()

    store = create_store(settings)
    if isinstance(store, PostgresProposalStore) and settings.environment != "prod":
        await store.init_schema()

    lifecycle = SignerLifecycleManager(store, settings, clock)
    engine = ProposalEngine(store, gateway, lifecycle=lifecycle, settings=settings, clock=clock)
    scheduler = GovernanceScheduler(store, engine, lifecycle, settings, clock)

    logger.info(
        f"Multisig governance initialized ({settings.environment}, "
        f"store={type(store).__name__}, gateway={type(gateway).__name__})"
    )
    return GovernanceServices(
        settings=settings,
        store=store,
        gateway=gateway,
        lifecycle=lifecycle,
        engine=engine,
        scheduler=scheduler,
    )
