"""Record models for the main and cargo stores.

Stores return these instead of raw row dicts so the coordinator and the CLI
work with typed fields.  Rows are validated with ``model_validate``; extra
columns in older store files are ignored.
"""

from typing import Any, Literal, get_args

from pydantic import BaseModel, ConfigDict, Field

PieceStatus = Literal["active", "inactive"]
LinkStatus = Literal["active", "inactive"]
CycleKind = Literal["cold", "hot"]
AssayStatus = Literal[
    "scheduled",
    "pending",
    "in-progress",
    "completed",
    "failed",
    "cancelled",
]

ASSAY_STATUSES: frozenset[str] = frozenset(get_args(AssayStatus))
TERMINAL_ASSAY_STATUSES: frozenset[str] = frozenset({"completed", "failed", "cancelled"})


class StoreRecord(BaseModel):
    """Base for rows read back from a store."""

    model_config = ConfigDict(extra="ignore")


# ============================================================================
# Cargo store
# ============================================================================


class Piece(StoreRecord):
    """A load-test equipment unit, identified across stores by ``tag_id``."""

    id: int
    tag_id: str
    type: str
    cycle_count: int = 0
    status: PieceStatus = "active"
    acquisition_date: str | None = None


class CargoAssayLink(StoreRecord):
    """Association between a piece and a protocol run in a cycle kind."""

    id: int
    piece_id: int
    protocol: str
    cycle_kind: CycleKind
    link_status: LinkStatus = "active"
    cycles_in_link: int | None = None
    created_at: str | None = None


class CycleLedgerEntry(StoreRecord):
    """Cycles of one completed assay applied to a piece (one row per assay)."""

    assay_id: int
    tag_id: str
    cycles: int
    applied_at: str


class CycleApplication(BaseModel):
    """Outcome of adding an assay's cycles to a piece."""

    piece: Piece
    applied: bool  # False when the ledger already held this assay
    expired: bool = False


class PieceCycleChange(BaseModel):
    tag_id: str
    type: str
    cycles_before: int
    cycles_after: int
    cycles_added: int


class ProtocolFinalization(BaseModel):
    """Pieces whose cycles changed when a protocol run was closed.

    ``expired`` is the subset of ``affected`` that reached the cycle limit
    in this run.
    """

    protocol: str
    cycle_kind: CycleKind
    affected: list[PieceCycleChange] = Field(default_factory=list)
    expired: list[PieceCycleChange] = Field(default_factory=list)


class CycleDistributionRow(BaseModel):
    """Active pieces of one type bucketed by cycle count."""

    type: str
    under_20: int = 0
    from_20_to_39: int = 0
    from_40_to_59: int = 0
    from_60: int = 0


class BulkAddResult(BaseModel):
    """Outcome of adding several pieces at once."""

    added: list[Piece] = Field(default_factory=list)
    skipped_tags: list[str] = Field(default_factory=list)


class PieceReportRow(BaseModel):
    """Per-piece link totals for reports."""

    tag_id: str
    type: str
    status: PieceStatus
    cycle_count: int
    acquisition_date: str | None = None
    total_links: int = 0
    active_links: int = 0
    inactive_links: int = 0


class PieceDetails(BaseModel):
    """A piece with its full link history, newest first."""

    piece: Piece
    links: list[CargoAssayLink] = Field(default_factory=list)


class CargoData(BaseModel):
    """Full read of the cargo store."""

    pieces: list[Piece] = Field(default_factory=list)
    links: list[CargoAssayLink] = Field(default_factory=list)
    ledger: list[CycleLedgerEntry] = Field(default_factory=list)


# ============================================================================
# Main store
# ============================================================================


class Assay(StoreRecord):
    """A scheduled or historical assay.  ``piece_tag_id`` points into the cargo store."""

    id: int
    protocol: str
    piece_tag_id: str | None = None
    status: AssayStatus = "scheduled"
    cycles: int = 0
    start_date: str | None = None
    end_date: str | None = None
    completed_at: str | None = None


class InventoryItem(StoreRecord):
    """A reagent lot in stock."""

    id: int
    code: str
    description: str
    manufacturer: str | None = None
    lot: str | None = None
    quantity: float = 0
    unit: str = "g"
    validity: str | None = None


class Calibration(StoreRecord):
    """Calibration state of a piece of lab equipment."""

    id: int
    equipment: str
    last_calibration: str | None = None
    next_calibration: str | None = None
    status: str = "valid"


class SystemUser(StoreRecord):
    """A user allowed to operate the tool."""

    id: int
    username: str
    display_name: str = ""
    role: str = "operator"


class Holiday(StoreRecord):
    """A non-working day excluded from scheduling."""

    id: int
    date: str
    name: str


class Notification(StoreRecord):
    """A system notification shown to operators."""

    id: int
    type: str
    message: str
    created_at: str


class MainData(BaseModel):
    """Full read of the main store."""

    inventory: list[InventoryItem] = Field(default_factory=list)
    assays: list[Assay] = Field(default_factory=list)
    calibrations: list[Calibration] = Field(default_factory=list)
    users: list[SystemUser] = Field(default_factory=list)
    holidays: list[Holiday] = Field(default_factory=list)
    settings: dict[str, Any] = Field(default_factory=dict)
    notifications: list[Notification] = Field(default_factory=list)
