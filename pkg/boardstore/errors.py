"""
Error taxonomy for the board store.

Domain errors (NotFoundError, ValidationError) reach callers unchanged.
Backend and unexpected failures are wrapped in StorageError with the
operation name and context so they can be diagnosed without leaking
backend internals.
"""
from typing import List, Optional


class BoardStoreError(Exception):
    """Base class for every error raised by the board store."""
    pass


class ArgumentError(BoardStoreError, ValueError):
    """Raised when a caller passes an unusable argument (blank id, negative order)."""
    pass


class NotFoundError(BoardStoreError):
    """Raised when a board or card id is unknown."""
    pass


class BoardNotFoundError(NotFoundError):

    def __init__(self, board_id: str):
        super().__init__(f"Board '{board_id}' not found")
        self.board_id = board_id


class CardNotFoundError(NotFoundError):

    def __init__(self, card_id: str):
        super().__init__(f"Card '{card_id}' not found")
        self.card_id = card_id


class ValidationError(BoardStoreError):
    """
    Raised when data violates one or more invariants.

    Carries the full list of issues, not just the first one found.
    """

    def __init__(self, issues: list, message: str = "Board data failed validation"):
        self.issues = list(issues)
        detail = "; ".join(str(i) for i in self.issues)
        super().__init__(f"{message}: {detail}" if detail else message)

    @property
    def messages(self) -> List[str]:
        return [str(i) for i in self.issues]


class InvalidOperationError(BoardStoreError):
    """Raised for operations that cannot proceed, e.g. restoring a missing backup."""
    pass


class StorageError(BoardStoreError):
    """Raised when the persistence backend fails. Wraps the original error."""

    def __init__(self, message: str, operation: str = "", context: Optional[str] = None):
        super().__init__(message)
        self.operation = operation
        self.context = context


class OperationFailedError(BoardStoreError):
    """Raised when a retried or fallback operation is exhausted. Chains the last cause."""

    def __init__(self, message: str, operation: str = "", attempts: int = 0):
        super().__init__(message)
        self.operation = operation
        self.attempts = attempts


class CircuitOpenError(BoardStoreError):
    """Raised when a call is rejected because its circuit is open."""

    def __init__(self, circuit: str):
        super().__init__(f"Circuit '{circuit}' is open")
        self.circuit = circuit


class DebounceSuperseded(BoardStoreError):
    """Raised to a debounced caller whose call was replaced by a newer one."""
    pass


class ConfigError(BoardStoreError):
    """Raised when configuration is invalid or incomplete."""
    pass
