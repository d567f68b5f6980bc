"""Cross-module coordination between the main and cargo stores."""

from labcontrol.coordinator.hybrid import HybridCoordinator
from labcontrol.coordinator.index import TagIndex
from labcontrol.coordinator.models import (
    CargoSyncSummary,
    CrossModuleResult,
    IntegrityReport,
    PieceStatusChange,
    ReconciliationGap,
    StoreBackupOutcome,
    UnifiedBackupResult,
    UnifiedData,
)

__all__ = [
    "CargoSyncSummary",
    "CrossModuleResult",
    "HybridCoordinator",
    "IntegrityReport",
    "PieceStatusChange",
    "ReconciliationGap",
    "StoreBackupOutcome",
    "TagIndex",
    "UnifiedBackupResult",
    "UnifiedData",
]
