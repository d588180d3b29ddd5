from __future__ import annotations

from typing import Iterable


class LedgerError(Exception):
    """Base class for every failure the engine reports to its callers."""


class ValidationError(LedgerError):
    """Raised when input fails validation; carries every problem found."""

    def __init__(self, messages: Iterable[str] | str) -> None:
        if isinstance(messages, str):
            messages = [messages]
        self.messages = list(messages)
        super().__init__("; ".join(self.messages))


class NotFoundError(LedgerError):
    def __init__(self, kind: str, record_id: object) -> None:
        self.kind = kind
        self.record_id = record_id
        super().__init__(f"{kind} {record_id} not found.")


class DuplicateError(LedgerError):
    pass


class DuplicateBudgetError(DuplicateError):
    def __init__(self, category: str) -> None:
        self.category = category
        super().__init__(f"A budget already exists for category {category}.")


class UpstreamError(LedgerError):
    """Raised when the backing store fails; the original error is kept."""

    def __init__(self, message: str, cause: BaseException | None = None) -> None:
        self.cause = cause
        super().__init__(message)
