"""
Marketplace exceptions.

Every failure raised by the marketplace logic is a MarketplaceError carrying a
machine-readable code plus keyword details, so the API layer can map it to an
HTTP response without inspecting messages.
"""
from decimal import Decimal
from typing import Any, Dict


class MarketplaceError(Exception):
    """
    Base exception for all marketplace errors.

    Usage:
        raise InsufficientStock(requested=120, available=60)

    Attributes:
        code: Error code (NOT_FOUND, CONFLICT, INSUFFICIENT_STOCK, ...)
        message: Human readable explanation
        details: Additional context as keyword arguments
    """

    code = "MARKETPLACE_ERROR"

    def __init__(self, message: str = "", **details: Any):
        self.message = message or self.code
        self.details = details
        super().__init__(self.message)

    def as_dict(self) -> Dict[str, Any]:
        """Return error as dictionary for API responses."""
        return {"code": self.code, **self.details}

    def __str__(self) -> str:
        if self.details:
            details_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"{self.code}: {self.message} ({details_str})"
        return f"{self.code}: {self.message}"


class InvalidArgument(MarketplaceError):
    """Missing or malformed input; nothing was written."""
    code = "INVALID_ARGUMENT"


class NotFound(MarketplaceError):
    code = "NOT_FOUND"


class Forbidden(MarketplaceError):
    """Caller is not allowed to act on this crop or interest."""
    code = "FORBIDDEN"


class Conflict(MarketplaceError):
    code = "CONFLICT"


class AlreadyProcessed(MarketplaceError):
    """The interest is already accepted and cannot change again."""
    code = "ALREADY_PROCESSED"


class InsufficientStock(MarketplaceError):
    """Requested quantity exceeds the crop's remaining quantity at commit time."""
    code = "INSUFFICIENT_STOCK"

    def __init__(self, requested: Decimal, available: Decimal, message: str = ""):
        self.requested = requested
        self.available = available
        super().__init__(
            message or f"Requested quantity {requested} exceeds available quantity {available}",
            requested=requested,
            available=available,
        )


class Unavailable(MarketplaceError):
    """Transient store failure; the caller may retry."""
    code = "UNAVAILABLE"


class StoreNotConnected(Unavailable):
    code = "STORE_NOT_CONNECTED"

    def __init__(self, message: str = "Document store not initialized. Call connect_store() first."):
        super().__init__(message)
