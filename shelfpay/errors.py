"""
Error taxonomy for the payment/fulfillment paths.

Every error carries a stable ``code`` and the HTTP status the server maps it
to. The server renders them as ``{"ok": false, "error": code, "detail": ...}``.
Authentication failures use a fixed, generic detail.
"""
from __future__ import annotations


class ShelfpayError(Exception):
    code = "PROCESSING_FAILED"
    status_code = 500
    default_detail = "processing failed"

    def __init__(self, detail: str | None = None):
        self.detail = detail or self.default_detail
        super().__init__(self.detail)

    def envelope(self) -> dict:
        return {"ok": False, "error": self.code, "detail": self.detail}


# --- authentication ---
class InvalidSignature(ShelfpayError):
    code = "INVALID_SIGNATURE"
    status_code = 400
    default_detail = "invalid signature"

    def __init__(self, detail: str | None = None):
        # never echo where verification failed
        super().__init__(None)


class InvalidDownloadToken(ShelfpayError):
    code = "INVALID_TOKEN"
    status_code = 403
    default_detail = "Invalid or expired download link"

    def __init__(self, detail: str | None = None):
        super().__init__(None)


class Unauthorized(ShelfpayError):
    code = "UNAUTHORIZED"
    status_code = 401
    default_detail = "unauthorized"


# --- validation ---
class ValidationFailed(ShelfpayError):
    code = "VALIDATION_FAILED"
    status_code = 400
    default_detail = "invalid payload"


# --- conflicts ---
class DuplicateOrder(ShelfpayError):
    """Already processed. Callers treat this as success."""
    code = "DUPLICATE_ORDER"
    status_code = 200
    default_detail = "Order already processed"

    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(None)


class InsufficientStock(ShelfpayError):
    code = "INSUFFICIENT_STOCK"
    status_code = 409
    default_detail = "insufficient stock"

    def __init__(self, book_id: str, requested: int, available: int):
        self.book_id = book_id
        self.requested = requested
        self.available = available
        super().__init__(
            f"book {book_id}: requested {requested}, in stock {available}"
        )


class InvalidTransition(ShelfpayError):
    code = "INVALID_TRANSITION"
    status_code = 409
    default_detail = "invalid shipping status transition"


# --- not found ---
class BookNotFound(ShelfpayError):
    code = "BOOK_NOT_FOUND"
    status_code = 404
    default_detail = "book not found"

    def __init__(self, book_id: str):
        self.book_id = book_id
        super().__init__(f"book {book_id} not found")


class OrderNotFound(ShelfpayError):
    code = "ORDER_NOT_FOUND"
    status_code = 404
    default_detail = "order not found"


class FileUnavailable(ShelfpayError):
    code = "FILE_UNAVAILABLE"
    status_code = 404
    default_detail = "Digital file not available"


# --- downstream / infrastructure ---
class ProcessingFailed(ShelfpayError):
    pass


class ProviderError(ShelfpayError):
    code = "PROVIDER_ERROR"
    status_code = 502
    default_detail = "payment provider request failed"

    def __init__(self, detail: str | None = None, payload: dict | None = None):
        self.payload = payload
        super().__init__(detail)


class ConfigurationError(ShelfpayError):
    code = "NOT_CONFIGURED"
    status_code = 500
    default_detail = "service not configured"
