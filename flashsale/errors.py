"""Typed failures raised by the flash sale services.

Checkout callers need to tell "out of stock" apart from "limit reached" and
"campaign ended", so every failure carries a stable ``code`` and the HTTP
status the API layer should answer with.
"""
from __future__ import annotations

from typing import Any, Dict, Optional


class FlashSaleError(Exception):
    code = "FLASH_SALE_ERROR"
    http_status = 400

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": self.message, "code": self.code}
        if self.details:
            payload["details"] = self.details
        return payload


class NotFoundError(FlashSaleError):
    code = "NOT_FOUND"
    http_status = 404


class InvalidStateError(FlashSaleError):
    code = "INVALID_STATE"
    http_status = 409


class InsufficientStockError(FlashSaleError):
    code = "INSUFFICIENT_STOCK"
    http_status = 409


class LimitExceededError(FlashSaleError):
    code = "LIMIT_EXCEEDED"
    http_status = 409


class ValidationError(FlashSaleError):
    code = "VALIDATION_ERROR"
    http_status = 400
