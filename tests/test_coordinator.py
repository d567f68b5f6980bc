"""Tests for HybridCoordinator cross-module operations.

Stores are real SQLite files under ``tmp_path``.  Cargo-side failures are
simulated by patching the store method that performs the write.
"""

from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest

from labcontrol.backup.engine import BackupEngine
from labcontrol.coordinator.hybrid import HybridCoordinator
from labcontrol.errors import (
    AssayNotFoundError,
    AssayPieceMismatchError,
    CoordinatorNotInitializedError,
    InvalidAssayStatusError,
    PieceNotFoundError,
    UnifiedReadError,
)
from labcontrol.events.bus import EventBus
from labcontrol.stores.cargo import CYCLE_LIMIT, CargoStore
from labcontrol.stores.main import MainStore


async def _seed(coordinator: HybridCoordinator, tag_id: str = "TAG-1", cycles: int = 5):
    piece = await coordinator.cargo.add_piece(tag_id, "cell")
    assay = await coordinator.main.add_assay("P-1", piece_tag_id=tag_id, cycles=cycles)
    return piece, assay


# ============================================================================
# Lifecycle
# ============================================================================


class TestLifecycle:
    """initialize()/close() contract."""

    @pytest.mark.asyncio
    async def test_operations_require_initialize(self, tmp_path: Path) -> None:
        """Calling an operation before initialize() raises."""
        coord = HybridCoordinator(
            MainStore(tmp_path / "database.sqlite"),
            CargoStore(tmp_path / "cargo.sqlite"),
            BackupEngine(tmp_path),
        )
        with pytest.raises(CoordinatorNotInitializedError):
            await coord.sync_cargo_data_to_main()
        await coord.close()

    @pytest.mark.asyncio
    async def test_close_unregisters_handlers(self, tmp_path: Path) -> None:
        """After close() the shared bus has no coordinator handlers left."""
        bus = EventBus()
        coord = HybridCoordinator(
            MainStore(tmp_path / "database.sqlite"),
            CargoStore(tmp_path / "cargo.sqlite"),
            BackupEngine(tmp_path),
            bus=bus,
        )
        await coord.initialize()
        assert bus.handler_count("ProtocolLinked") == 2
        await coord.close()
        assert bus.handler_count("ProtocolLinked") == 0
        assert not coord.main.is_connected

    @pytest.mark.asyncio
    async def test_index_built_on_initialize(self, tmp_path: Path) -> None:
        """Existing pieces and assays are indexed by tag id."""
        cargo = CargoStore(tmp_path / "cargo.sqlite")
        await cargo.initialize()
        piece = await cargo.add_piece("TAG-1", "cell")
        await cargo.close()

        coord = HybridCoordinator(
            MainStore(tmp_path / "database.sqlite"),
            CargoStore(tmp_path / "cargo.sqlite"),
            BackupEngine(tmp_path),
        )
        await coord.initialize()
        try:
            assert coord.tag_index.piece_id("TAG-1") == piece.id
        finally:
            await coord.close()


# ============================================================================
# link_protocol_to_piece
# ============================================================================


class TestLinkProtocol:
    """Supersede-on-relink plus ProtocolLinked."""

    @pytest.mark.asyncio
    async def test_relink_supersedes(
        self, coordinator: HybridCoordinator, recorded_events: list
    ) -> None:
        """The second link supersedes the first and both events are emitted."""
        await coordinator.cargo.add_piece("TAG-1", "cell")
        first = await coordinator.link_protocol_to_piece("TAG-1", "P-1", "cold")
        second = await coordinator.link_protocol_to_piece("TAG-1", "P-2", "hot", actor="ana")

        assert [e.type for e in recorded_events] == ["ProtocolLinked", "ProtocolLinked"]
        last = recorded_events[-1]
        assert last.payload.superseded_link_ids == [first.id]
        assert last.payload.link_id == second.id
        assert last.actor == "ana"
        assert await coordinator.cargo.count_active_links(first.piece_id) == 1

    @pytest.mark.asyncio
    async def test_link_records_notification(self, coordinator: HybridCoordinator) -> None:
        """The main store gets a protocol-linked notification once handlers finish."""
        await coordinator.cargo.add_piece("TAG-1", "cell")
        await coordinator.link_protocol_to_piece("TAG-1", "P-1", "cold")
        await coordinator.bus.drain()

        notes = await coordinator.main.list_notifications()
        assert [n.type for n in notes] == ["protocol-linked"]
        assert "TAG-1" in notes[0].message

    @pytest.mark.asyncio
    async def test_unknown_piece(self, coordinator: HybridCoordinator) -> None:
        """Linking to an unknown tag raises and creates nothing."""
        with pytest.raises(PieceNotFoundError):
            await coordinator.link_protocol_to_piece("ghost", "P-1", "cold")
        assert await coordinator.cargo.list_links() == []


# ============================================================================
# update_piece_status_from_assay
# ============================================================================


class TestPieceStatusFromAssay:
    """Assay status to piece status mapping."""

    @pytest.mark.asyncio
    async def test_non_terminal_activates(self, coordinator: HybridCoordinator) -> None:
        """An in-progress assay makes the piece active."""
        await coordinator.cargo.add_piece("TAG-1", "cell")
        await coordinator.cargo.update_piece_status("TAG-1", "inactive")

        change = await coordinator.update_piece_status_from_assay("TAG-1", "in-progress")
        assert (change.old_status, change.new_status) == ("inactive", "active")

    @pytest.mark.asyncio
    async def test_terminal_without_link_deactivates(self, coordinator: HybridCoordinator) -> None:
        """A completed assay on a piece with no active link makes it inactive."""
        await coordinator.cargo.add_piece("TAG-1", "cell")
        change = await coordinator.update_piece_status_from_assay("TAG-1", "completed")
        assert change.new_status == "inactive"

    @pytest.mark.asyncio
    async def test_terminal_with_link_stays_active(
        self, coordinator: HybridCoordinator, recorded_events: list
    ) -> None:
        """An active link keeps the piece active after a terminal status."""
        await coordinator.cargo.add_piece("TAG-1", "cell")
        await coordinator.link_protocol_to_piece("TAG-1", "P-1", "cold")

        change = await coordinator.update_piece_status_from_assay("TAG-1", "failed")
        assert change.new_status == "active"
        assert change.active_links == 1
        assert recorded_events[-1].type == "PieceStatusChanged"
        assert recorded_events[-1].payload.assay_status == "failed"

    @pytest.mark.asyncio
    async def test_retired_piece_stays_inactive(self, coordinator: HybridCoordinator) -> None:
        """A piece at the cycle limit is not reactivated."""
        await coordinator.cargo.add_piece("TAG-1", "cell")
        await coordinator.cargo.apply_assay_cycles(1, "TAG-1", CYCLE_LIMIT)

        change = await coordinator.update_piece_status_from_assay("TAG-1", "in-progress")
        assert change.new_status == "inactive"

    @pytest.mark.asyncio
    async def test_invalid_status(self, coordinator: HybridCoordinator) -> None:
        """Unknown assay statuses are rejected before any lookup."""
        with pytest.raises(InvalidAssayStatusError):
            await coordinator.update_piece_status_from_assay("TAG-1", "paused")


# ============================================================================
# notify_assay_completion
# ============================================================================


class TestAssayCompletion:
    """Main write, then cargo write, with partial-failure reporting."""

    @pytest.mark.asyncio
    async def test_applied(self, coordinator: HybridCoordinator, recorded_events: list) -> None:
        """Both stores are updated and AssayCompleted is emitted."""
        _, assay = await _seed(coordinator, cycles=7)
        result = await coordinator.notify_assay_completion(assay.id, "TAG-1")

        assert result.outcome == "applied"
        assert result.success
        assert (result.cycles_added, result.total_cycles) == (7, 7)
        assert (await coordinator.main.get_assay(assay.id)).status == "completed"
        assert [e.type for e in recorded_events] == ["AssayCompleted"]
        assert coordinator.tag_index.assay_ids("TAG-1") == {assay.id}

    @pytest.mark.asyncio
    async def test_repeat_is_idempotent(
        self, coordinator: HybridCoordinator, recorded_events: list
    ) -> None:
        """Completing the same assay twice adds its cycles once."""
        _, assay = await _seed(coordinator, cycles=7)
        await coordinator.notify_assay_completion(assay.id, "TAG-1")
        again = await coordinator.notify_assay_completion(assay.id, "TAG-1")

        assert again.outcome == "applied"
        assert again.cycles_added == 0
        assert (await coordinator.cargo.get_piece_by_tag("TAG-1")).cycle_count == 7
        assert len(await coordinator.main.list_notifications()) == 1
        assert len(recorded_events) == 1

    @pytest.mark.asyncio
    async def test_unknown_assay_or_piece_writes_nothing(
        self, coordinator: HybridCoordinator
    ) -> None:
        """Missing references raise before either store is written."""
        _, assay = await _seed(coordinator)
        untagged = await coordinator.main.add_assay("P-2", cycles=1)
        with pytest.raises(AssayNotFoundError):
            await coordinator.notify_assay_completion(999, "TAG-1")
        with pytest.raises(PieceNotFoundError):
            await coordinator.notify_assay_completion(untagged.id, "ghost")

        assert (await coordinator.main.get_assay(assay.id)).status == "scheduled"
        stored = await coordinator.main.get_assay(untagged.id)
        assert (stored.status, stored.piece_tag_id) == ("scheduled", None)
        assert await coordinator.main.list_notifications() == []

    @pytest.mark.asyncio
    async def test_cargo_failure_is_partial(
        self, coordinator: HybridCoordinator, recorded_events: list
    ) -> None:
        """Main commits, cargo fails: partial result, a gap and a flagged event."""
        _, assay = await _seed(coordinator, cycles=5)
        failing = AsyncMock(side_effect=RuntimeError("disk full"))
        with patch.object(coordinator.cargo, "apply_assay_cycles", failing):
            result = await coordinator.notify_assay_completion(assay.id, "TAG-1")

        assert result.outcome == "partial"
        assert result.needs_reconciliation
        assert not result.success
        assert "disk full" in result.error

        assert (await coordinator.main.get_assay(assay.id)).status == "completed"
        assert (await coordinator.cargo.get_piece_by_tag("TAG-1")).cycle_count == 0

        [gap] = coordinator.gaps
        assert (gap.kind, gap.assay_id, gap.tag_id) == ("cycles-not-applied", assay.id, "TAG-1")

        [event] = recorded_events
        assert event.type == "CargoUpdated"
        assert event.payload.needs_reconciliation is True
        assert event.payload.cycles == 5

    @pytest.mark.asyncio
    async def test_other_piece_rejected_before_writes(
        self, coordinator: HybridCoordinator, recorded_events: list
    ) -> None:
        """Completing an assay against a piece other than its own writes nothing."""
        await coordinator.cargo.add_piece("TAG-A", "cell")
        await coordinator.cargo.add_piece("TAG-B", "cell")
        assay = await coordinator.main.add_assay("P-1", piece_tag_id="TAG-A", cycles=5)

        with pytest.raises(AssayPieceMismatchError) as exc_info:
            await coordinator.notify_assay_completion(assay.id, "TAG-B")

        assert exc_info.value.recorded_tag_id == "TAG-A"
        assert (await coordinator.main.get_assay(assay.id)).status == "scheduled"
        assert await coordinator.cargo.list_ledger() == []
        assert coordinator.gaps == []
        assert recorded_events == []

    @pytest.mark.asyncio
    async def test_untagged_assay_gets_piece(self, coordinator: HybridCoordinator) -> None:
        """An assay created without a piece is assigned the one it completes on."""
        await coordinator.cargo.add_piece("TAG-1", "cell")
        assay = await coordinator.main.add_assay("P-1", cycles=3)

        result = await coordinator.notify_assay_completion(assay.id, "TAG-1")
        assert result.outcome == "applied"
        assert (await coordinator.main.get_assay(assay.id)).piece_tag_id == "TAG-1"

    @pytest.mark.asyncio
    async def test_main_failure_is_not_applied(self, coordinator: HybridCoordinator) -> None:
        """A failing main write leaves the cargo store untouched."""
        _, assay = await _seed(coordinator)
        failing = AsyncMock(side_effect=RuntimeError("locked"))
        with patch.object(coordinator.main, "complete_assay", failing):
            result = await coordinator.notify_assay_completion(assay.id, "TAG-1")

        assert result.outcome == "not_applied"
        assert not result.needs_reconciliation
        assert await coordinator.cargo.list_ledger() == []


# ============================================================================
# reconcile
# ============================================================================


class TestReconcile:
    """Retry of completed assays missing from the cycle ledger."""

    @pytest.mark.asyncio
    async def test_reconcile_after_partial(self, coordinator: HybridCoordinator) -> None:
        """A partial completion is finished by reconcile(), exactly once."""
        _, assay = await _seed(coordinator, cycles=5)
        with patch.object(
            coordinator.cargo, "apply_assay_cycles", AsyncMock(side_effect=RuntimeError("x"))
        ):
            await coordinator.notify_assay_completion(assay.id, "TAG-1")

        [result] = await coordinator.reconcile()
        assert result.outcome == "applied"
        assert coordinator.gaps == []
        assert await coordinator.reconcile() == []
        assert (await coordinator.cargo.get_piece_by_tag("TAG-1")).cycle_count == 5

    @pytest.mark.asyncio
    async def test_reconcile_credits_the_failed_piece(self, coordinator: HybridCoordinator) -> None:
        """Cycles reconciled after a partial land on the piece named in the gap."""
        await coordinator.cargo.add_piece("TAG-A", "cell")
        await coordinator.cargo.add_piece("TAG-B", "cell")
        assay = await coordinator.main.add_assay("P-1", piece_tag_id="TAG-A", cycles=5)
        with patch.object(
            coordinator.cargo, "apply_assay_cycles", AsyncMock(side_effect=RuntimeError("x"))
        ):
            await coordinator.notify_assay_completion(assay.id, "TAG-A")
        [gap] = coordinator.gaps

        [result] = await coordinator.reconcile()
        assert result.tag_id == gap.tag_id == "TAG-A"
        assert (await coordinator.cargo.get_piece_by_tag("TAG-A")).cycle_count == 5
        assert (await coordinator.cargo.get_piece_by_tag("TAG-B")).cycle_count == 0

    @pytest.mark.asyncio
    async def test_reconcile_untagged_assay(self, coordinator: HybridCoordinator) -> None:
        """An assay created without a piece is still reconciled after a partial."""
        await coordinator.cargo.add_piece("TAG-1", "cell")
        assay = await coordinator.main.add_assay("P-1", cycles=5)
        with patch.object(
            coordinator.cargo, "apply_assay_cycles", AsyncMock(side_effect=RuntimeError("x"))
        ):
            first = await coordinator.notify_assay_completion(assay.id, "TAG-1")
        assert first.outcome == "partial"

        [result] = await coordinator.reconcile()
        assert result.outcome == "applied"
        assert (await coordinator.cargo.get_piece_by_tag("TAG-1")).cycle_count == 5
        assert coordinator.gaps == []

    @pytest.mark.asyncio
    async def test_reconcile_unknown_piece(self, coordinator: HybridCoordinator) -> None:
        """Completed assays whose piece is gone are reported as not applied."""
        assay = await coordinator.main.add_assay("P-1", piece_tag_id="ghost", cycles=3)
        await coordinator.main.complete_assay(assay.id, "done")

        [result] = await coordinator.reconcile()
        assert result.outcome == "not_applied"
        assert result.operation == "reconcile"


# ============================================================================
# Reads and integrity
# ============================================================================


class TestReads:
    """Summary, unified read and integrity report."""

    @pytest.mark.asyncio
    async def test_sync_summary(self, coordinator: HybridCoordinator) -> None:
        """Counts pieces by status and lists active protocols."""
        await coordinator.cargo.add_piece("TAG-1", "cell")
        await coordinator.cargo.add_piece("TAG-2", "cell")
        await coordinator.cargo.update_piece_status("TAG-2", "inactive")
        await coordinator.link_protocol_to_piece("TAG-1", "P-1", "cold")
        await coordinator.link_protocol_to_piece("TAG-1", "P-2", "hot")

        summary = await coordinator.sync_cargo_data_to_main()
        assert (summary.total_pieces, summary.active_pieces, summary.inactive_pieces) == (2, 1, 1)
        assert (summary.total_links, summary.active_links) == (2, 1)
        assert summary.active_protocols == ["P-2"]

    @pytest.mark.asyncio
    async def test_unified_data(self, coordinator: HybridCoordinator) -> None:
        """Both stores and the tag index come back together."""
        _, assay = await _seed(coordinator)
        await coordinator.rebuild_index()

        data = await coordinator.get_unified_data()
        assert len(data.main.assays) == 1
        assert len(data.cargo.pieces) == 1
        assert data.tag_index["TAG-1"].assay_ids == [assay.id]

    @pytest.mark.asyncio
    async def test_unified_read_names_failing_store(self, coordinator: HybridCoordinator) -> None:
        """A failing read raises UnifiedReadError naming the store."""
        with patch.object(
            coordinator.cargo, "read_all", AsyncMock(side_effect=RuntimeError("corrupt"))
        ):
            with pytest.raises(UnifiedReadError) as exc_info:
                await coordinator.get_unified_data()
        assert exc_info.value.store == "cargo"
        assert "corrupt" in exc_info.value.reason

    @pytest.mark.asyncio
    async def test_integrity_report(self, coordinator: HybridCoordinator) -> None:
        """Unknown tags and orphan ledger rows are both reported."""
        stray = await coordinator.main.add_assay("P-1", piece_tag_id="ghost")
        piece = await coordinator.cargo.add_piece("TAG-1", "cell")
        await coordinator.cargo.apply_assay_cycles(42, "TAG-1", 2)
        await coordinator.cargo.delete_piece(piece.id)

        report = await coordinator.validate_cross_module_integrity()
        assert report.unknown_tag_assays == [stray.id]
        assert report.orphan_ledger_entries == [42]
        assert report.multiple_active_links == []
        assert not report.valid
        assert report.error_count == 2

    @pytest.mark.asyncio
    async def test_integrity_clean(self, coordinator: HybridCoordinator) -> None:
        """Consistent stores produce a valid report."""
        await _seed(coordinator)
        assert (await coordinator.validate_cross_module_integrity()).valid


# ============================================================================
# Unified backup
# ============================================================================


class TestUnifiedBackup:
    """Snapshots of both stores registered with the backup engine."""

    @pytest.mark.asyncio
    async def test_both_stores(self, coordinator: HybridCoordinator, tmp_path: Path) -> None:
        """Writes one snapshot per store and two backup pairs."""
        await _seed(coordinator)
        result = await coordinator.create_unified_backup(tmp_path / "out" / "snap")

        assert result.success
        assert result.main.snapshot_path == tmp_path / "out" / "snap_main.sqlite"
        assert result.cargo.snapshot_path.is_file()
        assert len(coordinator.backup_engine.list_backups()) == 2

    @pytest.mark.asyncio
    async def test_failure_reported_per_store(
        self, coordinator: HybridCoordinator, tmp_path: Path
    ) -> None:
        """A failing cargo snapshot does not hide the main result."""
        with patch.object(
            coordinator.cargo, "snapshot", AsyncMock(side_effect=OSError("read-only"))
        ):
            result = await coordinator.create_unified_backup(tmp_path / "snap")

        assert result.main.success
        assert not result.cargo.success
        assert "read-only" in result.cargo.error
        assert not result.success


# ============================================================================
# Dropped events
# ============================================================================


class TestDroppedEvents:
    """Handler failures become reconciliation gaps."""

    @pytest.mark.asyncio
    async def test_refresh_failure_recorded(self, tmp_path: Path) -> None:
        """A failing refresh callback is logged as an event-dropped gap."""

        def broken_refresh(event) -> None:
            raise RuntimeError("ui gone")

        coord = HybridCoordinator(
            MainStore(tmp_path / "database.sqlite"),
            CargoStore(tmp_path / "cargo.sqlite"),
            BackupEngine(tmp_path),
            on_refresh=broken_refresh,
        )
        await coord.initialize()
        try:
            await coord.cargo.add_piece("TAG-1", "cell")
            link = await coord.link_protocol_to_piece("TAG-1", "P-1", "cold")
            await coord.bus.drain()

            assert link.link_status == "active"
            [gap] = coord.gaps
            assert gap.kind == "event-dropped"
            assert gap.event_type == "ProtocolLinked"
            assert gap.tag_id == "TAG-1"
        finally:
            await coord.close()


# ============================================================================
# Protocol runs
# ============================================================================


class TestProtocolRuns:
    """Linking several pieces at once and closing a protocol run."""

    @pytest.mark.asyncio
    async def test_link_several_pieces(
        self, coordinator: HybridCoordinator, recorded_events: list
    ) -> None:
        """Each piece gets an active link and its own ProtocolLinked."""
        for tag in ("TAG-1", "TAG-2"):
            await coordinator.cargo.add_piece(tag, "cell")

        links = await coordinator.link_protocol_to_pieces(
            "P-9", [("TAG-1", "cold"), ("TAG-2", "hot")], actor="ana"
        )

        assert [link.cycle_kind for link in links] == ["cold", "hot"]
        assert [e.payload.tag_id for e in recorded_events] == ["TAG-1", "TAG-2"]
        assert all(e.actor == "ana" for e in recorded_events)
        assert len(await coordinator.cargo.list_links(link_status="active")) == 2

    @pytest.mark.asyncio
    async def test_link_several_unknown_tag_writes_nothing(
        self, coordinator: HybridCoordinator
    ) -> None:
        """One unknown tag stops the whole batch before any link is written."""
        await coordinator.cargo.add_piece("TAG-1", "cell")
        with pytest.raises(PieceNotFoundError):
            await coordinator.link_protocol_to_pieces("P-9", [("TAG-1", "cold"), ("ghost", "cold")])
        assert await coordinator.cargo.list_links() == []

    @pytest.mark.asyncio
    async def test_finalize_reports_expired(
        self, coordinator: HybridCoordinator, recorded_events: list
    ) -> None:
        """Every linked piece is credited; the one crossing the limit is reported expired."""
        await coordinator.cargo.add_piece("TAG-1", "cell")
        await coordinator.cargo.add_piece("TAG-2", "cell")
        await coordinator.cargo.apply_assay_cycles(1, "TAG-2", CYCLE_LIMIT - 2)
        await coordinator.link_protocol_to_pieces("P-9", [("TAG-1", "cold"), ("TAG-2", "cold")])
        recorded_events.clear()

        result = await coordinator.finalize_protocol("P-9", "cold", 5)

        assert [c.tag_id for c in result.affected] == ["TAG-1", "TAG-2"]
        assert [c.tag_id for c in result.expired] == ["TAG-2"]
        retired = await coordinator.cargo.get_piece_by_tag("TAG-2")
        assert (retired.cycle_count, retired.status) == (CYCLE_LIMIT + 3, "inactive")
        assert await coordinator.cargo.list_links(link_status="active") == []
        assert [e.type for e in recorded_events] == ["CargoUpdated", "CargoUpdated"]
        assert recorded_events[0].source == "cargo"


# ============================================================================
# Piece removal
# ============================================================================


class TestRemovePiece:
    """Deleting a piece through the coordinator keeps the tag index current."""

    @pytest.mark.asyncio
    async def test_removed_piece_leaves_index(self, coordinator: HybridCoordinator) -> None:
        """The unified read no longer maps the tag to a piece."""
        _, assay = await _seed(coordinator)
        await coordinator.notify_assay_completion(assay.id, "TAG-1")

        await coordinator.remove_piece("TAG-1")

        assert "TAG-1" not in coordinator.tag_index
        data = await coordinator.get_unified_data()
        assert data.tag_index["TAG-1"].piece_id is None
        assert data.tag_index["TAG-1"].assay_ids == [assay.id]
        assert data.cargo.pieces == []

    @pytest.mark.asyncio
    async def test_remove_unknown_piece(self, coordinator: HybridCoordinator) -> None:
        with pytest.raises(PieceNotFoundError):
            await coordinator.remove_piece("ghost")
