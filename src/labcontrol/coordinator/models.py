"""Result models returned by ``HybridCoordinator``."""

from datetime import datetime, timezone
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field

from labcontrol.stores.models import AssayStatus, CargoData, MainData, PieceStatus

Outcome = Literal["applied", "not_applied", "partial"]
GapKind = Literal["cycles-not-applied", "event-dropped"]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class CrossModuleResult(BaseModel):
    """Outcome of an operation that writes to both stores.

    ``partial`` means the main store committed and the cargo store did not;
    ``needs_reconciliation`` is then set and ``reconcile()`` will finish it.
    """

    operation: str
    outcome: Outcome
    needs_reconciliation: bool = False
    assay_id: int | None = None
    tag_id: str | None = None
    cycles_added: int = 0
    total_cycles: int | None = None
    expired: bool = False
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.outcome == "applied"


class PieceStatusChange(BaseModel):
    tag_id: str
    old_status: PieceStatus
    new_status: PieceStatus
    assay_status: AssayStatus
    active_links: int = 0


class CargoSyncSummary(BaseModel):
    """Aggregate piece and link counts for the main side."""

    total_pieces: int = 0
    active_pieces: int = 0
    inactive_pieces: int = 0
    expired_pieces: int = 0
    total_links: int = 0
    active_links: int = 0
    active_protocols: list[str] = Field(default_factory=list)
    last_sync: datetime = Field(default_factory=_utc_now)


class TagIndexEntry(BaseModel):
    piece_id: int | None = None
    assay_ids: list[int] = Field(default_factory=list)


class UnifiedData(BaseModel):
    """Both stores in one payload, plus the tag lookup table."""

    main: MainData
    cargo: CargoData
    tag_index: dict[str, TagIndexEntry] = Field(default_factory=dict)


class StoreBackupOutcome(BaseModel):
    store: str
    success: bool = False
    snapshot_path: Path | None = None
    error: str | None = None


class UnifiedBackupResult(BaseModel):
    main: StoreBackupOutcome
    cargo: StoreBackupOutcome

    @property
    def success(self) -> bool:
        return self.main.success and self.cargo.success


class IntegrityReport(BaseModel):
    """Cross-store reference problems.

    Attributes:
        unknown_tag_assays: Assay ids whose ``piece_tag_id`` matches no piece.
        multiple_active_links: Tag ids of pieces with more than one active link.
        orphan_ledger_entries: Assay ids in the cycle ledger whose piece is gone.
    """

    unknown_tag_assays: list[int] = Field(default_factory=list)
    multiple_active_links: list[str] = Field(default_factory=list)
    orphan_ledger_entries: list[int] = Field(default_factory=list)

    @property
    def valid(self) -> bool:
        return self.error_count == 0

    @property
    def error_count(self) -> int:
        return (
            len(self.unknown_tag_assays)
            + len(self.multiple_active_links)
            + len(self.orphan_ledger_entries)
        )


class ReconciliationGap(BaseModel):
    """A cross-module change that did not reach the other store."""

    kind: GapKind
    reason: str
    tag_id: str | None = None
    assay_id: int | None = None
    event_type: str | None = None
    detected_at: datetime = Field(default_factory=_utc_now)
