"""Construction of stores, backup engine and coordinator from configuration.

Nothing here is cached at module level: every call builds fresh objects and
the caller owns their lifecycle.

Usage:
    config = load_config(Path.cwd())
    async with open_coordinator(config) as coordinator:
        await coordinator.link_protocol_to_piece("TAG-001", "P-12", "hot")
"""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from labcontrol.backup.engine import BackupEngine
from labcontrol.config.models import LabControlConfig
from labcontrol.coordinator.hybrid import HybridCoordinator, RefreshCallback
from labcontrol.errors import SchemaMismatchError
from labcontrol.events.bus import EventBus
from labcontrol.schema.models import ConnectionResult
from labcontrol.stores.base import SqliteStore
from labcontrol.stores.cargo import CargoStore
from labcontrol.stores.main import MainStore

logger = logging.getLogger(__name__)


def build_stores(config: LabControlConfig) -> tuple[MainStore, CargoStore]:
    return MainStore(config.main_path), CargoStore(config.cargo_path)


def build_coordinator(
    config: LabControlConfig,
    on_refresh: RefreshCallback | None = None,
) -> HybridCoordinator:
    """Build an uninitialized coordinator for the workspace in ``config``."""
    main, cargo = build_stores(config)
    return HybridCoordinator(
        main,
        cargo,
        BackupEngine(config.workspace_root),
        bus=EventBus(),
        on_refresh=on_refresh,
    )


@asynccontextmanager
async def open_coordinator(
    config: LabControlConfig,
    auto_backup: bool = False,
    on_refresh: RefreshCallback | None = None,
) -> AsyncIterator[HybridCoordinator]:
    """Initialize a coordinator and close it on exit.

    Args:
        config: Workspace configuration.
        auto_backup: Start the periodic main-store backup when the workspace
            config enables it (``[backup] auto``).
        on_refresh: Forwarded to ``HybridCoordinator``.
    """
    coordinator = build_coordinator(config, on_refresh=on_refresh)
    try:
        await coordinator.initialize()
        if auto_backup and config.backup.auto:
            coordinator.backup_engine.start_auto_backup(config.main_path)
        yield coordinator
    finally:
        coordinator.backup_engine.stop_auto_backup()
        await coordinator.close()


async def connect_and_validate(config: LabControlConfig) -> list[ConnectionResult]:
    """Open both stores, create missing tables and validate their schemas.

    Never raises; each store's problem is reported in its own result.

    Example:
        >>> results = await connect_and_validate(config)
        >>> [r.store for r in results if not r.success]
        []
    """
    results = []
    for store in build_stores(config):
        results.append(await _check_store(store))
    return results


async def _check_store(store: SqliteStore) -> ConnectionResult:
    try:
        await store.initialize()
    except SchemaMismatchError as e:
        return ConnectionResult(
            success=False,
            store=store.name,
            path=str(store.path),
            schema_valid=False,
            error=e.report,
        )
    except Exception as e:
        logger.exception("Could not open %s store at %s", store.name, store.path)
        return ConnectionResult(
            success=False,
            store=store.name,
            path=str(store.path),
            error=f"Failed to open store: {e}",
        )
    finally:
        await store.close()
    return ConnectionResult(success=True, store=store.name, path=str(store.path), schema_valid=True)
