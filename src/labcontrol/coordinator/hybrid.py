"""Coordinator for operations that span the main and cargo stores.

The two stores are separate files with no shared transaction.  Cross-module
operations write to one store, commit, then write to the other; the second
write may fail after the first has committed.  Such operations return a
``CrossModuleResult`` with ``outcome="partial"`` instead of raising, record a
``ReconciliationGap``, and emit a ``CargoUpdated`` event flagged for
reconciliation.  ``reconcile()`` later completes them.

Usage:
    coordinator = HybridCoordinator(main, cargo, BackupEngine(root))
    await coordinator.initialize()
    result = await coordinator.notify_assay_completion(assay_id=12, tag_id="TAG-001")
    if result.needs_reconciliation:
        await coordinator.reconcile()
    await coordinator.close()
"""

import asyncio
import inspect
import logging
from collections.abc import Callable
from pathlib import Path
from typing import Any

from labcontrol.backup.engine import BackupEngine
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
from labcontrol.errors import (
    AssayNotFoundError,
    AssayPieceMismatchError,
    CoordinatorNotInitializedError,
    InvalidAssayStatusError,
    NotFoundError,
    PieceNotFoundError,
    UnifiedReadError,
)
from labcontrol.events.bus import EventBus
from labcontrol.events.models import (
    AssayCompleted,
    AssayCompletedPayload,
    CargoUpdated,
    CargoUpdatedPayload,
    CrossModuleEvent,
    EventType,
    PieceStatusChanged,
    PieceStatusChangedPayload,
    ProtocolLinked,
    ProtocolLinkedPayload,
)
from labcontrol.stores.base import SqliteStore
from labcontrol.stores.cargo import CYCLE_LIMIT, CargoStore
from labcontrol.stores.main import MainStore
from labcontrol.stores.models import (
    ASSAY_STATUSES,
    TERMINAL_ASSAY_STATUSES,
    CargoAssayLink,
    CycleKind,
    ProtocolFinalization,
)

logger = logging.getLogger(__name__)

RefreshCallback = Callable[[CrossModuleEvent], Any]

ALL_EVENT_TYPES: tuple[EventType, ...] = (
    "PieceStatusChanged",
    "AssayCompleted",
    "ProtocolLinked",
    "CargoUpdated",
)


class HybridCoordinator:
    """Owns both stores and the event bus; runs cross-module operations.

    Args:
        main: Main store (assays, notifications, ...).
        cargo: Cargo store (pieces, links, cycle ledger).
        backup_engine: Engine used by ``create_unified_backup``.
        bus: Event bus.  A private one is created when omitted.
        cycle_limit: Cycle count at which a piece is retired.
        on_refresh: Optional callback invoked with every event after it is
            handled, e.g. to push fresh data to a UI.  May be async.
    """

    def __init__(
        self,
        main: MainStore,
        cargo: CargoStore,
        backup_engine: BackupEngine,
        bus: EventBus | None = None,
        cycle_limit: int = CYCLE_LIMIT,
        on_refresh: RefreshCallback | None = None,
    ) -> None:
        self.main = main
        self.cargo = cargo
        self.backup_engine = backup_engine
        self.bus = bus or EventBus()
        if self.bus.on_error is None:
            self.bus.on_error = self._record_dropped_event
        self.cycle_limit = cycle_limit
        self.on_refresh = on_refresh

        self.tag_index = TagIndex()
        self._gaps: list[ReconciliationGap] = []
        self._initialized = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def initialized(self) -> bool:
        return self._initialized

    async def initialize(self) -> None:
        """Initialize both stores, build the tag index, register handlers."""
        if self._initialized:
            return
        await self.main.initialize()
        await self.cargo.initialize()
        await self.rebuild_index()

        self.bus.on("ProtocolLinked", self._record_link_notification)
        for event_type in ALL_EVENT_TYPES:
            self.bus.on(event_type, self._refresh)

        self._initialized = True
        logger.info("Coordinator initialized (%d pieces indexed)", len(self.tag_index))

    async def close(self) -> None:
        """Wait for pending handlers, unregister them and close both stores.

        Also closes stores left open by a failed ``initialize()``.
        """
        if self._initialized:
            await self.bus.drain()
            self.bus.off("ProtocolLinked", self._record_link_notification)
            for event_type in ALL_EVENT_TYPES:
                self.bus.off(event_type, self._refresh)
            self._initialized = False
            logger.info("Coordinator closed")
        await self.main.close()
        await self.cargo.close()

    async def rebuild_index(self) -> None:
        self.tag_index.rebuild(await self.cargo.list_pieces(), await self.main.list_assays())

    def _require_initialized(self) -> None:
        if not self._initialized:
            raise CoordinatorNotInitializedError(
                "HybridCoordinator.initialize() must be awaited before use"
            )

    # ------------------------------------------------------------------
    # Cross-module operations
    # ------------------------------------------------------------------

    async def link_protocol_to_piece(
        self,
        tag_id: str,
        protocol: str,
        cycle_kind: CycleKind,
        actor: str | None = None,
    ) -> CargoAssayLink:
        """Link a protocol to a piece, superseding its current active link.

        Raises:
            PieceNotFoundError: If no piece has ``tag_id``.
        """
        self._require_initialized()
        piece = await self.cargo.get_piece_by_tag(tag_id)
        if piece is None:
            raise PieceNotFoundError(tag_id)

        link, superseded = await self.cargo.supersede_link(piece.id, protocol, cycle_kind)
        self.tag_index.add_piece(tag_id, piece.id)
        logger.info("Protocol %r linked to piece %s (%s)", protocol, tag_id, cycle_kind)

        await self.bus.emit(
            ProtocolLinked(
                actor=actor,
                payload=ProtocolLinkedPayload(
                    tag_id=tag_id,
                    piece_id=piece.id,
                    link_id=link.id,
                    protocol=protocol,
                    cycle_kind=cycle_kind,
                    superseded_link_ids=superseded,
                ),
            )
        )
        return link

    async def link_protocol_to_pieces(
        self,
        protocol: str,
        pieces: list[tuple[str, CycleKind]],
        actor: str | None = None,
    ) -> list[CargoAssayLink]:
        """Link one protocol to several pieces at once.

        Every tag is resolved first; the links are then written in a single
        cargo transaction and one ``ProtocolLinked`` is emitted per piece.

        Raises:
            PieceNotFoundError: If any tag matches no piece (nothing is written).
        """
        self._require_initialized()
        resolved = []
        for tag_id, cycle_kind in pieces:
            piece = await self.cargo.get_piece_by_tag(tag_id)
            if piece is None:
                raise PieceNotFoundError(tag_id)
            resolved.append((tag_id, piece.id, cycle_kind))

        linked = await self.cargo.link_pieces(
            protocol, [(piece_id, cycle_kind) for _, piece_id, cycle_kind in resolved]
        )
        for (tag_id, piece_id, cycle_kind), (link, superseded) in zip(resolved, linked):
            self.tag_index.add_piece(tag_id, piece_id)
            await self.bus.emit(
                ProtocolLinked(
                    actor=actor,
                    payload=ProtocolLinkedPayload(
                        tag_id=tag_id,
                        piece_id=piece_id,
                        link_id=link.id,
                        protocol=link.protocol,
                        cycle_kind=cycle_kind,
                        superseded_link_ids=superseded,
                    ),
                )
            )
        return [link for link, _ in linked]

    async def finalize_protocol(
        self,
        protocol: str,
        cycle_kind: CycleKind,
        cycles: int,
        actor: str | None = None,
    ) -> ProtocolFinalization:
        """Credit ``cycles`` to every piece linked to a finished protocol run.

        Emits a ``CargoUpdated`` per credited piece.
        """
        self._require_initialized()
        finalization = await self.cargo.finalize_protocol(
            protocol, cycle_kind, cycles, self.cycle_limit
        )
        for change in finalization.affected:
            await self.bus.emit(
                CargoUpdated(
                    source="cargo",
                    target="main",
                    actor=actor,
                    payload=CargoUpdatedPayload(tag_id=change.tag_id, cycles=cycles),
                )
            )
        return finalization

    async def remove_piece(self, tag_id: str) -> None:
        """Delete a piece with its link history and drop it from the tag index.

        Assays that name the tag stay in the main store and are reported by
        ``validate_cross_module_integrity``.

        Raises:
            PieceNotFoundError: If no piece has ``tag_id``.
        """
        self._require_initialized()
        piece = await self.cargo.get_piece_by_tag(tag_id)
        if piece is None:
            raise PieceNotFoundError(tag_id)
        await self.cargo.delete_piece(piece.id)
        self.tag_index.remove_piece(tag_id)
        logger.info("Piece %s removed", tag_id)

    async def update_piece_status_from_assay(
        self,
        tag_id: str,
        assay_status: str,
        actor: str | None = None,
    ) -> PieceStatusChange:
        """Derive a piece's status from the status of an assay on it.

        Non-terminal assay statuses make the piece active.  Terminal statuses
        make it inactive unless it still has an active link.  A piece retired
        at the cycle limit stays inactive.

        Raises:
            InvalidAssayStatusError: If ``assay_status`` is not a known status.
            PieceNotFoundError: If no piece has ``tag_id``.
        """
        self._require_initialized()
        if assay_status not in ASSAY_STATUSES:
            raise InvalidAssayStatusError(
                f"Unknown assay status {assay_status!r}; "
                f"expected one of {', '.join(sorted(ASSAY_STATUSES))}"
            )
        piece = await self.cargo.get_piece_by_tag(tag_id)
        if piece is None:
            raise PieceNotFoundError(tag_id)

        active_links = await self.cargo.count_active_links(piece.id)
        if piece.cycle_count >= self.cycle_limit:
            new_status = "inactive"
        elif assay_status in TERMINAL_ASSAY_STATUSES:
            new_status = "active" if active_links else "inactive"
        else:
            new_status = "active"

        updated = await self.cargo.update_piece_status(tag_id, new_status)
        change = PieceStatusChange(
            tag_id=tag_id,
            old_status=piece.status,
            new_status=updated.status,
            assay_status=assay_status,
            active_links=active_links,
        )
        await self.bus.emit(
            PieceStatusChanged(
                actor=actor,
                payload=PieceStatusChangedPayload(
                    tag_id=tag_id,
                    old_status=change.old_status,
                    new_status=change.new_status,
                    assay_status=assay_status,
                ),
            )
        )
        return change

    async def notify_assay_completion(
        self,
        assay_id: int,
        tag_id: str,
        actor: str | None = None,
    ) -> CrossModuleResult:
        """Complete an assay in the main store and add its cycles to the piece.

        Both the assay and the piece are resolved before anything is written.
        An assay with no piece yet is assigned ``tag_id`` by the main write.
        The main write (status + notification) commits first; a failure there
        returns ``not_applied``.  The cargo write (ledger + cycle increment)
        follows; a failure there returns ``partial`` and is recorded for
        ``reconcile()``.  Calling this again for the same assay never adds the
        cycles twice.

        Raises:
            AssayNotFoundError: If no assay has ``assay_id``.
            AssayPieceMismatchError: If the assay belongs to another piece.
            PieceNotFoundError: If no piece has ``tag_id``.
        """
        self._require_initialized()
        assay = await self.main.get_assay(assay_id)
        if assay is None:
            raise AssayNotFoundError(assay_id)
        if assay.piece_tag_id and assay.piece_tag_id != tag_id:
            raise AssayPieceMismatchError(assay_id, assay.piece_tag_id, tag_id)
        piece = await self.cargo.get_piece_by_tag(tag_id)
        if piece is None:
            raise PieceNotFoundError(tag_id)

        try:
            if assay.status != "completed":
                await self.main.complete_assay(
                    assay_id, f"Assay {assay_id} completed for piece {tag_id}", piece_tag_id=tag_id
                )
            elif assay.piece_tag_id is None:
                await self.main.update_assay(assay_id, {"piece_tag_id": tag_id})
        except Exception as e:
            logger.exception("Main store write failed for assay %s", assay_id)
            return CrossModuleResult(
                operation="notify_assay_completion",
                outcome="not_applied",
                assay_id=assay_id,
                tag_id=tag_id,
                error=str(e),
            )
        self.tag_index.add_assay(tag_id, assay_id)

        try:
            application = await self.cargo.apply_assay_cycles(
                assay_id, tag_id, assay.cycles, self.cycle_limit
            )
        except Exception as e:
            return await self._cargo_write_failed(assay_id, tag_id, assay.cycles, e, actor)

        self._clear_gaps(assay_id)
        if application.applied:
            await self.bus.emit(
                AssayCompleted(
                    actor=actor,
                    payload=AssayCompletedPayload(
                        assay_id=assay_id,
                        tag_id=tag_id,
                        cycles_added=assay.cycles,
                        total_cycles=application.piece.cycle_count,
                        expired=application.expired,
                    ),
                )
            )
        return CrossModuleResult(
            operation="notify_assay_completion",
            outcome="applied",
            assay_id=assay_id,
            tag_id=tag_id,
            cycles_added=assay.cycles if application.applied else 0,
            total_cycles=application.piece.cycle_count,
            expired=application.expired,
        )

    async def _cargo_write_failed(
        self,
        assay_id: int,
        tag_id: str,
        cycles: int,
        error: Exception,
        actor: str | None,
    ) -> CrossModuleResult:
        reason = f"{type(error).__name__}: {error}"
        logger.error(
            "Assay %s completed in main store but cycles not applied to %s: %s",
            assay_id,
            tag_id,
            reason,
        )
        self._gaps.append(
            ReconciliationGap(
                kind="cycles-not-applied",
                reason=reason,
                tag_id=tag_id,
                assay_id=assay_id,
                event_type="AssayCompleted",
            )
        )
        await self.bus.emit(
            CargoUpdated(
                actor=actor,
                payload=CargoUpdatedPayload(
                    tag_id=tag_id,
                    assay_id=assay_id,
                    cycles=cycles,
                    needs_reconciliation=True,
                    reason=reason,
                ),
            )
        )
        return CrossModuleResult(
            operation="notify_assay_completion",
            outcome="partial",
            needs_reconciliation=True,
            assay_id=assay_id,
            tag_id=tag_id,
            error=reason,
        )

    async def reconcile(self) -> list[CrossModuleResult]:
        """Apply cycles for every completed assay missing from the cycle ledger.

        The piece is the assay's ``piece_tag_id``, or for an assay that has
        none, the tag recorded on its ``cycles-not-applied`` gap.
        """
        self._require_initialized()
        applied = await self.cargo.applied_assay_ids()
        gap_tags = {
            g.assay_id: g.tag_id
            for g in self._gaps
            if g.kind == "cycles-not-applied" and g.tag_id
        }
        pending: dict[int, str] = {}
        for assay in await self.main.list_assays(status="completed"):
            tag_id = assay.piece_tag_id or gap_tags.get(assay.id)
            if tag_id and assay.id not in applied:
                pending[assay.id] = tag_id

        results = []
        for assay_id, tag_id in pending.items():
            try:
                results.append(await self.notify_assay_completion(assay_id, tag_id))
            except (NotFoundError, AssayPieceMismatchError) as e:
                logger.warning("Cannot reconcile assay %s: %s", assay_id, e)
                results.append(
                    CrossModuleResult(
                        operation="reconcile",
                        outcome="not_applied",
                        assay_id=assay_id,
                        tag_id=tag_id,
                        error=str(e),
                    )
                )

        if pending:
            done = sum(1 for r in results if r.success)
            logger.info("Reconciled %d of %d pending assay(s)", done, len(pending))
        return results

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def sync_cargo_data_to_main(self) -> CargoSyncSummary:
        """Summarize piece states and active links.  Writes nothing."""
        self._require_initialized()
        pieces = await self.cargo.list_pieces()
        links = await self.cargo.list_links()
        active_links = [link for link in links if link.link_status == "active"]
        return CargoSyncSummary(
            total_pieces=len(pieces),
            active_pieces=sum(1 for p in pieces if p.status == "active"),
            inactive_pieces=sum(1 for p in pieces if p.status == "inactive"),
            expired_pieces=sum(1 for p in pieces if p.cycle_count >= self.cycle_limit),
            total_links=len(links),
            active_links=len(active_links),
            active_protocols=sorted({link.protocol for link in active_links}),
        )

    async def get_unified_data(self) -> UnifiedData:
        """Full read of both stores.

        Raises:
            UnifiedReadError: If either read fails; names the failing store.
        """
        self._require_initialized()
        main = await self._read_all(self.main)
        cargo = await self._read_all(self.cargo)
        return UnifiedData(main=main, cargo=cargo, tag_index=self.tag_index.snapshot())

    async def _read_all(self, store: SqliteStore):
        try:
            return await store.read_all()
        except Exception as e:
            logger.error("Full read of %s store failed: %s", store.name, e)
            raise UnifiedReadError(store.name, str(e)) from e

    async def validate_cross_module_integrity(self) -> IntegrityReport:
        """Check references between the stores against live data."""
        self._require_initialized()
        pieces = await self.cargo.list_pieces()
        tags = {p.tag_id for p in pieces}
        by_id = {p.id: p.tag_id for p in pieces}

        report = IntegrityReport()
        for assay in await self.main.list_assays():
            if assay.piece_tag_id and assay.piece_tag_id not in tags:
                report.unknown_tag_assays.append(assay.id)

        active_counts: dict[int, int] = {}
        for link in await self.cargo.list_links(link_status="active"):
            active_counts[link.piece_id] = active_counts.get(link.piece_id, 0) + 1
        report.multiple_active_links = sorted(
            by_id.get(piece_id, str(piece_id))
            for piece_id, count in active_counts.items()
            if count > 1
        )

        for entry in await self.cargo.list_ledger():
            if entry.tag_id not in tags:
                report.orphan_ledger_entries.append(entry.assay_id)

        if not report.valid:
            logger.warning("Integrity check found %d problem(s)", report.error_count)
        return report

    # ------------------------------------------------------------------
    # Backup
    # ------------------------------------------------------------------

    async def create_unified_backup(self, backup_path: str | Path) -> UnifiedBackupResult:
        """Snapshot both stores and register each snapshot with the backup engine.

        Writes ``<backup_path>_main.sqlite`` then ``<backup_path>_cargo.sqlite``.
        A failure on one store is reported against that store only.
        """
        self._require_initialized()
        main = await self._backup_store(self.main, backup_path)
        cargo = await self._backup_store(self.cargo, backup_path)
        return UnifiedBackupResult(main=main, cargo=cargo)

    async def _backup_store(self, store: SqliteStore, backup_path: str | Path) -> StoreBackupOutcome:
        destination = Path(f"{backup_path}_{store.name}.sqlite")
        try:
            await store.snapshot(destination)
        except Exception as e:
            logger.exception("Snapshot of %s store failed", store.name)
            return StoreBackupOutcome(store=store.name, error=str(e))

        if not await asyncio.to_thread(self.backup_engine.create_backup, destination):
            return StoreBackupOutcome(
                store=store.name,
                snapshot_path=destination,
                error=self.backup_engine.last_message,
            )
        return StoreBackupOutcome(store=store.name, success=True, snapshot_path=destination)

    # ------------------------------------------------------------------
    # Reconciliation gaps
    # ------------------------------------------------------------------

    @property
    def gaps(self) -> list[ReconciliationGap]:
        return list(self._gaps)

    def _clear_gaps(self, assay_id: int) -> None:
        self._gaps = [g for g in self._gaps if g.assay_id != assay_id]

    def _record_dropped_event(self, event: CrossModuleEvent, error: Exception) -> None:
        payload = event.payload
        self._gaps.append(
            ReconciliationGap(
                kind="event-dropped",
                reason=f"{type(error).__name__}: {error}",
                tag_id=getattr(payload, "tag_id", None),
                assay_id=getattr(payload, "assay_id", None),
                event_type=event.type,
            )
        )

    # ------------------------------------------------------------------
    # Change handlers
    # ------------------------------------------------------------------

    async def _record_link_notification(self, event: ProtocolLinked) -> None:
        payload = event.payload
        await self.main.add_notification(
            "protocol-linked",
            f"Protocol {payload.protocol} ({payload.cycle_kind}) linked to piece {payload.tag_id}",
        )

    async def _refresh(self, event: CrossModuleEvent) -> None:
        if self.on_refresh is None:
            return
        result = self.on_refresh(event)
        if inspect.isawaitable(result):
            await result
