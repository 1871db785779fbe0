"""
Sentry error context utilities.

Helpers that attach structured context and tags before sending an exception
to Sentry. When the SDK was never initialised these calls are no-ops inside
sentry_sdk itself.
"""

import logging
from typing import Any

import sentry_sdk

logger = logging.getLogger(__name__)


def capture_error(
    exception: Exception,
    context_type: str | None = None,
    context_data: dict[str, Any] | None = None,
    tags: dict[str, str] | None = None,
) -> str | None:
    """
    Capture an exception to Sentry with structured context.

    Args:
        exception: The exception to capture
        context_type: Type of context for the error
        context_data: Additional context information
        tags: Dictionary of tags for filtering

    Returns:
        Event ID if captured, None otherwise
    """
    try:
        with sentry_sdk.push_scope() as scope:
            if context_type and context_data:
                scope.set_context(context_type, context_data)
            if tags:
                for key, value in tags.items():
                    scope.set_tag(key, str(value))
            return sentry_sdk.capture_exception(exception)
    except Exception as e:
        logger.warning(f"Failed to capture exception to Sentry: {e}")
        return None


def capture_payment_error(
    exception: Exception,
    operation: str,
    provider: str = "stripe",
    account_id: str | None = None,
    details: dict[str, Any] | None = None,
) -> str | None:
    """
    Capture a payment-related error with standard context.

    Args:
        exception: The exception to capture
        operation: Payment operation (e.g., 'checkout', 'cancel', 'webhook')
        provider: Payment provider (default: 'stripe')
        account_id: Account ID if applicable
        details: Additional details (customer ID, subscription ID, etc.)

    Returns:
        Event ID if captured, None otherwise
    """
    context_data = {
        "operation": operation,
        "provider": provider,
    }
    if account_id:
        context_data["account_id"] = account_id
    if details:
        context_data.update(details)

    return capture_error(
        exception,
        context_type="payment",
        context_data=context_data,
        tags={"operation": operation, "provider": provider},
    )


def capture_provider_error(
    exception: Exception,
    provider: str,
    model: str | None = None,
    endpoint: str | None = None,
) -> str | None:
    """Capture an AI provider error (fal.ai model calls)."""
    context_data: dict[str, Any] = {"provider": provider}
    if model:
        context_data["model"] = model
    if endpoint:
        context_data["endpoint"] = endpoint

    tags = {"provider": provider}
    if model:
        tags["model"] = model

    return capture_error(exception, context_type="provider", context_data=context_data, tags=tags)
