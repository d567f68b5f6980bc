"""File-backed record stores: main (assays, inventory, ...) and cargo (pieces, links)."""

from labcontrol.stores.base import SqliteStore
from labcontrol.stores.cargo import CYCLE_LIMIT, CargoStore
from labcontrol.stores.main import MainStore
from labcontrol.stores.models import (
    ASSAY_STATUSES,
    TERMINAL_ASSAY_STATUSES,
    Assay,
    CargoAssayLink,
    CargoData,
    CycleApplication,
    CycleLedgerEntry,
    MainData,
    Piece,
    ProtocolFinalization,
)

__all__ = [
    "ASSAY_STATUSES",
    "CYCLE_LIMIT",
    "TERMINAL_ASSAY_STATUSES",
    "Assay",
    "CargoAssayLink",
    "CargoData",
    "CargoStore",
    "CycleApplication",
    "CycleLedgerEntry",
    "MainData",
    "MainStore",
    "Piece",
    "ProtocolFinalization",
    "SqliteStore",
]
