# Overview: Error taxonomy of the offline engine.

from __future__ import annotations

from ..validation import ValidationError


class InsufficientStockError(ValidationError):
    """
    A sale asked for more units than are on the shelf.

    Raised before any row is touched, so the whole sale is rejected.
    `shortages` lists one dict per product: productId, code, name,
    requested, available.
    """

    def __init__(self, shortages: list[dict]):
        self.shortages = shortages
        names = ", ".join(
            f"{s['code']} (requested {s['requested']}, available {s['available']})" for s in shortages
        )
        super().__init__(f"Insufficient stock: {names}")


class TransientNetworkError(Exception):
    """Connection failure, timeout or 5xx: the batch is retried later."""

    def __init__(self, message: str, *, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class FatalSyncError(Exception):
    """Missing credentials or a rejected request: the cycle is aborted."""

    def __init__(self, message: str, *, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code
