"""
Domain errors and HTTP exception factories.

Domain errors are raised by the services and the db layer. Route handlers
translate them into HTTP responses through ``APIExceptions`` so that status
codes and response bodies stay consistent across the API.

Usage:
    from fluxstudio.utils.exceptions import APIExceptions

    raise APIExceptions.not_found("Image", image_id)
    raise APIExceptions.insufficient_credits(credits=0, required_credits=1)
"""

import logging
from typing import Any

from fastapi import HTTPException

logger = logging.getLogger(__name__)


class BillingError(Exception):
    """Base exception for credit and subscription errors"""

    pass


class AccountNotFoundError(BillingError):
    """Raised when no account row matches the given id or billing reference"""

    def __init__(self, account_id: str):
        super().__init__(f"Account not found: {account_id}")
        self.account_id = account_id


class ConcurrentUpdateError(BillingError):
    """Raised when a versioned account write keeps losing to concurrent writers"""

    def __init__(self, account_id: str, attempts: int):
        super().__init__(
            f"Account {account_id} was modified concurrently; gave up after {attempts} attempts"
        )
        self.account_id = account_id
        self.attempts = attempts


class InvalidStatusTransitionError(BillingError):
    """Raised when a subscription status change is not in the transition table"""

    def __init__(self, current: str, requested: str):
        super().__init__(f"Cannot move subscription status from '{current}' to '{requested}'")
        self.current = current
        self.requested = requested


class InvalidBillingPeriodError(BillingError):
    """Raised when a billing period is missing, malformed, or not ordered"""

    pass


class UnknownPriceError(BillingError):
    """Raised when a Stripe price id does not map to a configured tier"""

    def __init__(self, price_id: str | None):
        super().__init__(f"Unknown price id: {price_id}")
        self.price_id = price_id


class ExternalOperationError(Exception):
    """Raised when an external provider (fal.ai, Stripe, storage) call fails"""

    def __init__(self, provider: str, message: str):
        super().__init__(f"{provider}: {message}")
        self.provider = provider
        self.message = message


class OperationDeniedError(HTTPException):
    """
    403 whose body is sent as-is rather than wrapped in ``detail``.

    Clients read ``credits``/``requiredCredits`` or ``requiresUpgrade`` from
    the top level of the response to decide which upgrade prompt to show.
    """

    def __init__(self, body: dict[str, Any]):
        super().__init__(status_code=403, detail=body)
        self.body = body


class APIExceptions:
    """Factory class for creating standardized HTTP exceptions."""

    @staticmethod
    def unauthorized(detail: str = "Unauthorized") -> HTTPException:
        """401 Unauthorized - Authentication failed."""
        return HTTPException(status_code=401, detail=detail)

    @staticmethod
    def forbidden(detail: str = "Access forbidden") -> HTTPException:
        """
        403 Forbidden - User doesn't have permission.

        Args:
            detail: Custom error message

        Returns:
            HTTPException with status 403
        """
        return HTTPException(status_code=403, detail=detail)

    @staticmethod
    def insufficient_credits(
        credits: int,
        required_credits: int,
        message: str = "Insufficient credits. Please upgrade your plan to continue.",
    ) -> OperationDeniedError:
        """
        403 Forbidden - Balance too low for the requested operation.

        The body carries the current and required counts so the client can
        render an upgrade prompt.
        """
        return OperationDeniedError(
            {
                "message": message,
                "credits": credits,
                "requiredCredits": required_credits,
            }
        )

    @staticmethod
    def requires_upgrade(message: str) -> OperationDeniedError:
        """403 Forbidden - The account's tier does not include this capability."""
        return OperationDeniedError({"message": message, "requiresUpgrade": True})

    @staticmethod
    def not_found(resource: str = "Resource", resource_id: Any | None = None) -> HTTPException:
        """
        404 Not Found - Resource doesn't exist.

        Args:
            resource: Type of resource (e.g., "Account", "Image")
            resource_id: Optional ID of the resource

        Returns:
            HTTPException with status 404
        """
        detail = f"{resource} not found"
        if resource_id is not None:
            detail += f": {resource_id}"
        return HTTPException(status_code=404, detail=detail)

    @staticmethod
    def bad_request(
        detail: str = "Bad request", errors: dict[str, Any] | None = None
    ) -> HTTPException:
        """
        400 Bad Request - Invalid request data.

        Args:
            detail: Error message
            errors: Optional validation errors dict

        Returns:
            HTTPException with status 400
        """
        if errors:
            return HTTPException(status_code=400, detail={"message": detail, "errors": errors})
        return HTTPException(status_code=400, detail=detail)

    @staticmethod
    def provider_error(operation: str, error: Exception | None = None) -> HTTPException:
        """
        502 Bad Gateway - An upstream provider failed.

        The provider's own message is logged, never returned to the caller.
        """
        if error:
            logger.error(f"Provider error during {operation}: {error}")
        return HTTPException(status_code=502, detail=f"Failed to {operation}. Please try again.")

    @staticmethod
    def service_unavailable(detail: str = "Service temporarily unavailable") -> HTTPException:
        """503 Service Unavailable - A required integration is not configured."""
        return HTTPException(status_code=503, detail=detail)
