"""labcontrol: hybrid persistence for lab assays and load-test pieces.

Two independent SQLite stores (main and cargo) kept consistent by a
coordinator, an in-process event bus, and a file-level backup engine.

Usage:
    from labcontrol import load_config, open_coordinator
    from labcontrol import BackupEngine, EventBus, HybridCoordinator
    from labcontrol import MainStore, CargoStore
"""

__version__ = "0.1.0"

# Adapters
from labcontrol.adapters.base import DatabaseClient
from labcontrol.adapters.sqlite import AsyncSqliteAdapter

# Backup
from labcontrol.backup.engine import BackupEngine
from labcontrol.backup.models import BackupRecord

# Config
from labcontrol.config.loader import load_config
from labcontrol.config.models import LabControlConfig, StoreProfile

# Coordinator
from labcontrol.coordinator.hybrid import HybridCoordinator
from labcontrol.coordinator.models import CrossModuleResult, UnifiedData

# Errors
from labcontrol.errors import (
    LabControlError,
    NotFoundError,
    PieceNotFoundError,
    AssayNotFoundError,
    UnifiedReadError,
)

# Events
from labcontrol.events.bus import EventBus

# Factory
from labcontrol.factory import build_coordinator, connect_and_validate, open_coordinator

# Stores
from labcontrol.stores.cargo import CargoStore
from labcontrol.stores.main import MainStore

__all__ = [
    # Adapters
    "DatabaseClient",
    "AsyncSqliteAdapter",
    # Backup
    "BackupEngine",
    "BackupRecord",
    # Config
    "load_config",
    "LabControlConfig",
    "StoreProfile",
    # Coordinator
    "HybridCoordinator",
    "CrossModuleResult",
    "UnifiedData",
    # Errors
    "LabControlError",
    "NotFoundError",
    "PieceNotFoundError",
    "AssayNotFoundError",
    "UnifiedReadError",
    # Events
    "EventBus",
    # Factory
    "build_coordinator",
    "connect_and_validate",
    "open_coordinator",
    # Stores
    "CargoStore",
    "MainStore",
]
