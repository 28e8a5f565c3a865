"""
Shared error handling for the ChatRoom services.
"""

from typing import Dict, Any, Optional
from pydantic import BaseModel

from opentelemetry import trace


class ErrorResponse(BaseModel):
    """Standard error response format."""

    trace_id: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = {}


class ChatRoomException(Exception):
    """Base exception for ChatRoom services."""

    status_code = 400

    def __init__(
        self,
        code: str,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        status_code: Optional[int] = None
    ):
        self.code = code
        self.message = message
        self.details = details or {}
        if status_code is not None:
            self.status_code = status_code
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        trace_id = None
        current_span = trace.get_current_span()
        if current_span and current_span.is_recording():
            span_context = current_span.get_span_context()
            if span_context.trace_id != 0:
                trace_id = f"{span_context.trace_id:032x}"

        return ErrorResponse(
            trace_id=trace_id,
            code=self.code,
            message=self.message,
            details=self.details
        )


class CacheUnavailableError(ChatRoomException):
    """Cache backend could not be reached or answered with an error."""

    status_code = 503

    def __init__(self, message: str = "Cache unavailable", details: Optional[Dict[str, Any]] = None):
        super().__init__("CACHE_UNAVAILABLE", message, details)


class CacheCorruptError(ChatRoomException):
    """Cached data could not be decoded."""

    status_code = 500

    def __init__(self, message: str = "Cache entry corrupt", details: Optional[Dict[str, Any]] = None):
        super().__init__("CACHE_CORRUPT", message, details)


class StoreUnavailableError(ChatRoomException):
    """The relational store failed; retryable server error."""

    status_code = 503

    def __init__(self, message: str = "Service Temporary Unavailable", details: Optional[Dict[str, Any]] = None):
        super().__init__("STORE_UNAVAILABLE", message, details)


class StickerSetNotFoundError(ChatRoomException):
    """Sticker set does not exist."""

    status_code = 404

    def __init__(self, sticker_set_id: int):
        super().__init__(
            "STICKER_SET_NOT_FOUND",
            f"sticker set {sticker_set_id} does not exist",
            {"sticker_set_id": sticker_set_id}
        )


class InsufficientFundsError(ChatRoomException):
    """Wallet balance does not cover the price."""

    status_code = 400

    def __init__(self, user_id: int, amount: int):
        super().__init__(
            "INSUFFICIENT_FUNDS",
            f"user {user_id} does not have enough money",
            {"user_id": user_id, "amount": amount}
        )


class AlreadyOwnedError(ChatRoomException):
    """User already owns the sticker set."""

    status_code = 409

    def __init__(self, user_id: int, sticker_set_id: int):
        super().__init__(
            "STICKER_ALREADY_OWNED",
            f"user {user_id} already bought sticker set {sticker_set_id}",
            {"user_id": user_id, "sticker_set_id": sticker_set_id}
        )


class UserNotInRoomError(ChatRoomException):
    """User is not a member of the room."""

    status_code = 403

    def __init__(self, user_id: int, room_id: int):
        super().__init__(
            "USER_NOT_IN_ROOM",
            f"user {user_id} is not in room {room_id}",
            {"user_id": user_id, "room_id": room_id}
        )


class WalletNotFoundError(ChatRoomException):
    """User has never charged a wallet."""

    status_code = 404

    def __init__(self, user_id: int):
        super().__init__(
            "USER_NOT_CHARGED",
            f"user {user_id} has no wallet",
            {"user_id": user_id}
        )


class ChargeAmountError(ChatRoomException):
    """Charge amount outside the accepted range."""

    status_code = 400

    def __init__(self, user_id: int, amount: int, min_amount: int, max_amount: int):
        super().__init__(
            "CHARGE_AMOUNT_OUT_OF_RANGE",
            f"charge must be between {min_amount} and {max_amount}",
            {"user_id": user_id, "amount": amount, "min_amount": min_amount, "max_amount": max_amount}
        )


class AuthenticationError(ChatRoomException):
    """Authentication-related errors."""

    status_code = 401

    def __init__(self, message: str = "Authentication failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("AUTHENTICATION_ERROR", message, details)
