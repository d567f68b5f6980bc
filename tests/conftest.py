"""Shared fixtures: initialized stores and coordinators on temporary files."""

from pathlib import Path

import pytest

from labcontrol.backup.engine import BackupEngine
from labcontrol.coordinator.hybrid import HybridCoordinator
from labcontrol.events.bus import EventBus
from labcontrol.stores.cargo import CargoStore
from labcontrol.stores.main import MainStore


@pytest.fixture
async def main_store(tmp_path: Path):
    store = MainStore(tmp_path / "database.sqlite")
    await store.initialize()
    yield store
    await store.close()


@pytest.fixture
async def cargo_store(tmp_path: Path):
    store = CargoStore(tmp_path / "cargo.sqlite")
    await store.initialize()
    yield store
    await store.close()


@pytest.fixture
async def coordinator(tmp_path: Path):
    coord = HybridCoordinator(
        MainStore(tmp_path / "database.sqlite"),
        CargoStore(tmp_path / "cargo.sqlite"),
        BackupEngine(tmp_path),
        bus=EventBus(),
    )
    await coord.initialize()
    yield coord
    await coord.close()


@pytest.fixture
def recorded_events(coordinator: HybridCoordinator) -> list:
    """Every event emitted on the coordinator's bus, in order."""
    events: list = []
    for event_type in ("PieceStatusChanged", "AssayCompleted", "ProtocolLinked", "CargoUpdated"):
        coordinator.bus.on(event_type, events.append)
    return events
