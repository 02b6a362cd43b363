# errors.py


class LMSError(Exception):
    """Base error for entitlement and catalog operations."""

    status_code = 400
    code = "error"

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.__class__.__doc__ or self.code)
        self.message = message or self.__class__.__doc__ or self.code


class NotFound(LMSError):
    """Referenced record does not exist."""

    status_code = 404
    code = "not_found"

    def __init__(self, kind: str, ident: str) -> None:
        super().__init__(f"{kind} '{ident}' not found")
        self.kind = kind
        self.ident = ident


class Unauthorized(LMSError):
    """Authentication required."""

    status_code = 401
    code = "unauthorized"


class Forbidden(LMSError):
    """Administrator rights required."""

    status_code = 403
    code = "forbidden"


class CardLocked(LMSError):
    """Course card is not unlocked for this user."""

    status_code = 403
    code = "card_locked"


class NoPlaysRemaining(LMSError):
    """No plays remaining for this video."""

    status_code = 409
    code = "no_plays_remaining"

    def __init__(self, video_id: str, plays_used: int, max_plays: int) -> None:
        super().__init__(f"No plays remaining for video '{video_id}' ({plays_used}/{max_plays})")
        self.video_id = video_id
        self.plays_used = plays_used
        self.max_plays = max_plays


class InvalidTransition(LMSError):
    """Purchase status change is not allowed."""

    status_code = 409
    code = "invalid_transition"

    def __init__(self, current: str, target: str) -> None:
        super().__init__(f"Transition to '{target}' not allowed from state '{current}'")
        self.current = current
        self.target = target


class PaymentError(LMSError):
    """Payment provider failure."""

    status_code = 502
    code = "payment_error"


class InvalidOrderId(PaymentError):
    """Order id does not match the expected format."""

    status_code = 400
    code = "invalid_order_id"

    def __init__(self, order_id: str) -> None:
        super().__init__(f"Malformed order id '{order_id}'")
        self.order_id = order_id


class ValidationError(LMSError):
    """Catalog data rule violated."""

    status_code = 422
    code = "validation_error"
