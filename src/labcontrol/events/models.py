"""Typed cross-module events.

Every event carries ``type``, ``source``, ``target``, ``payload``,
``timestamp`` and an optional ``actor``.  ``type`` selects the payload
model, so ``CrossModuleEvent`` validates as a discriminated union:

    event = TypeAdapter(CrossModuleEvent).validate_python(
        {"type": "ProtocolLinked", "source": "cargo", "target": "main", "payload": {...}}
    )

Events exist only on the bus; nothing here is persisted.
"""

from datetime import datetime, timezone
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field

from labcontrol.stores.models import AssayStatus, CycleKind, PieceStatus

StoreName = Literal["main", "cargo"]
EventType = Literal["PieceStatusChanged", "AssayCompleted", "ProtocolLinked", "CargoUpdated"]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# Payloads
# ============================================================================


class PieceStatusChangedPayload(BaseModel):
    tag_id: str
    old_status: PieceStatus
    new_status: PieceStatus
    assay_status: AssayStatus


class AssayCompletedPayload(BaseModel):
    assay_id: int
    tag_id: str
    cycles_added: int
    total_cycles: int
    expired: bool = False


class ProtocolLinkedPayload(BaseModel):
    tag_id: str
    piece_id: int
    link_id: int
    protocol: str
    cycle_kind: CycleKind
    superseded_link_ids: list[int] = Field(default_factory=list)


class CargoUpdatedPayload(BaseModel):
    """Cargo-side change notice.

    With ``needs_reconciliation`` set, the cargo write it describes did not
    happen and must be retried (see ``HybridCoordinator.reconcile``).
    """

    tag_id: str | None = None
    assay_id: int | None = None
    cycles: int | None = None
    needs_reconciliation: bool = False
    reason: str | None = None


# ============================================================================
# Events
# ============================================================================


class _EventBase(BaseModel):
    source: StoreName
    target: StoreName
    timestamp: datetime = Field(default_factory=_utc_now)
    actor: str | None = None


class PieceStatusChanged(_EventBase):
    type: Literal["PieceStatusChanged"] = "PieceStatusChanged"
    source: StoreName = "cargo"
    target: StoreName = "main"
    payload: PieceStatusChangedPayload


class AssayCompleted(_EventBase):
    type: Literal["AssayCompleted"] = "AssayCompleted"
    source: StoreName = "main"
    target: StoreName = "cargo"
    payload: AssayCompletedPayload


class ProtocolLinked(_EventBase):
    type: Literal["ProtocolLinked"] = "ProtocolLinked"
    source: StoreName = "cargo"
    target: StoreName = "main"
    payload: ProtocolLinkedPayload


class CargoUpdated(_EventBase):
    type: Literal["CargoUpdated"] = "CargoUpdated"
    source: StoreName = "main"
    target: StoreName = "cargo"
    payload: CargoUpdatedPayload


CrossModuleEvent = Annotated[
    Union[PieceStatusChanged, AssayCompleted, ProtocolLinked, CargoUpdated],
    Field(discriminator="type"),
]
