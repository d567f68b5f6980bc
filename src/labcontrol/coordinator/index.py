"""In-memory lookup table relating cargo pieces to main-store assays by tag id."""

from collections.abc import Iterable

from labcontrol.coordinator.models import TagIndexEntry
from labcontrol.stores.models import Assay, Piece


class TagIndex:
    """``tag_id -> piece_id`` and ``tag_id -> {assay ids}``.

    Built from full reads of both stores and kept current by the
    coordinator's own writes.  Writes made to a store directly, bypassing the
    coordinator, are only picked up by ``rebuild``.
    """

    def __init__(self) -> None:
        self._pieces: dict[str, int] = {}
        self._assays: dict[str, set[int]] = {}

    def rebuild(self, pieces: Iterable[Piece], assays: Iterable[Assay]) -> None:
        self._pieces = {p.tag_id: p.id for p in pieces}
        self._assays = {}
        for assay in assays:
            if assay.piece_tag_id:
                self.add_assay(assay.piece_tag_id, assay.id)

    def add_piece(self, tag_id: str, piece_id: int) -> None:
        self._pieces[tag_id] = piece_id

    def remove_piece(self, tag_id: str) -> None:
        self._pieces.pop(tag_id, None)

    def add_assay(self, tag_id: str, assay_id: int) -> None:
        self._assays.setdefault(tag_id, set()).add(assay_id)

    def piece_id(self, tag_id: str) -> int | None:
        return self._pieces.get(tag_id)

    def assay_ids(self, tag_id: str) -> set[int]:
        return set(self._assays.get(tag_id, ()))

    def snapshot(self) -> dict[str, TagIndexEntry]:
        tags = sorted(set(self._pieces) | set(self._assays))
        return {
            tag: TagIndexEntry(
                piece_id=self._pieces.get(tag),
                assay_ids=sorted(self._assays.get(tag, ())),
            )
            for tag in tags
        }

    def __contains__(self, tag_id: object) -> bool:
        return tag_id in self._pieces

    def __len__(self) -> int:
        return len(self._pieces)
