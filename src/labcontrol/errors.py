"""Exception hierarchy for labcontrol.

Backup operations never raise past ``BackupEngine`` (they return ``False``
and set ``last_message``); everything else raises one of these.

Usage:
    from labcontrol.errors import PieceNotFoundError, UnifiedReadError
"""


class LabControlError(Exception):
    """Base class for all labcontrol errors."""

    pass


class StoreNotConnectedError(LabControlError):
    """Raised when a store operation runs before ``connect()`` or after ``close()``."""

    pass


class SchemaMismatchError(LabControlError):
    """Raised when a store's live schema is missing expected tables or columns."""

    def __init__(self, store: str, report: str) -> None:
        self.store = store
        self.report = report
        super().__init__(f"{store} store schema invalid:\n{report}")


class NotFoundError(LabControlError):
    """Raised when a referenced entity does not exist."""

    pass


class PieceNotFoundError(NotFoundError):
    """Raised when no piece matches a tag id."""

    def __init__(self, tag_id: str) -> None:
        self.tag_id = tag_id
        super().__init__(f"Piece with tag id '{tag_id}' not found in cargo store")


class AssayNotFoundError(NotFoundError):
    """Raised when no assay matches an id."""

    def __init__(self, assay_id: int) -> None:
        self.assay_id = assay_id
        super().__init__(f"Assay {assay_id} not found in main store")


class InvalidAssayStatusError(LabControlError):
    """Raised when an assay status has no piece-status mapping."""

    pass


class UnifiedReadError(LabControlError):
    """Raised when a full read of either store fails.

    Attributes:
        store: ``"main"`` or ``"cargo"``.
        reason: Underlying error message.
    """

    def __init__(self, store: str, reason: str) -> None:
        self.store = store
        self.reason = reason
        super().__init__(f"Failed to read {store} store: {reason}")


class CoordinatorNotInitializedError(LabControlError):
    """Raised when a coordinator operation runs before ``initialize()``."""

    pass


class AssayPieceMismatchError(LabControlError):
    """Raised when an assay already recorded for one piece is completed against another."""

    def __init__(self, assay_id: int, recorded_tag_id: str, given_tag_id: str) -> None:
        self.assay_id = assay_id
        self.recorded_tag_id = recorded_tag_id
        self.given_tag_id = given_tag_id
        super().__init__(
            f"Assay {assay_id} belongs to piece '{recorded_tag_id}', not '{given_tag_id}'"
        )
