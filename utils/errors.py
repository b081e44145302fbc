"""Custom exception types for domain and API layers."""


class AppError(Exception):
    """Base app exception. Rendered by main.py as {"detail": message}."""

    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidInputError(AppError):
    """Validation failure for user input (unknown plan, bad age band)."""


class NotFoundError(AppError):
    """Requested entity does not exist or is not visible to the caller."""

    status_code = 404


class ConflictError(AppError):
    """Request conflicts with current state (duplicate subscription, email taken)."""

    status_code = 409


class GatewayError(AppError):
    """Payment gateway call failure."""


class WebhookSignatureError(AppError):
    """Webhook payload failed signature verification."""


class NotificationError(AppError):
    """Outbound email could not be delivered."""

    status_code = 502
