"""
Processed Stripe webhook events.

Stripe delivers at least once. The reconciler looks an event id up before
dispatching and records it afterwards, so a redelivery is acknowledged
without touching the account a second time. Recording is an upsert that
ignores an existing id, so two overlapping deliveries of the same event
cannot fail on the primary key.

Lookup failures are not fatal: handing the event to the reconciler again is
safe because credit refreshes are keyed on the billing period start.
"""

import logging
from datetime import datetime, timezone
from typing import Any

from fluxstudio.config.supabase_config import execute_with_retry

logger = logging.getLogger(__name__)

EVENTS_TABLE = "stripe_webhook_events"
SCHEMA_CACHE_MISS = "PGRST205"

_schema_hint_logged = False


def _log_schema_hint_once(error: Exception) -> None:
    global _schema_hint_logged

    if _schema_hint_logged:
        return
    if EVENTS_TABLE not in str(error) and SCHEMA_CACHE_MISS not in str(error):
        return

    logger.warning(
        f"{EVENTS_TABLE} is missing from the PostgREST schema cache; webhook "
        "dedup is off until supabase/migrations/20240101000000_billing_schema.sql "
        "is applied and the schema is reloaded"
    )
    _schema_hint_logged = True


def _event_row(
    event_id: str, event_type: str, account_id: str | None, metadata: dict[str, Any] | None
) -> dict[str, Any]:
    return {
        "event_id": event_id,
        "event_type": event_type,
        "account_id": account_id,
        "metadata": metadata or {},
        "processed_at": datetime.now(timezone.utc).isoformat(),
    }


def is_event_processed(event_id: str) -> bool:
    """True when ``event_id`` was recorded by an earlier delivery."""
    try:
        result = execute_with_retry(
            lambda client: client.table(EVENTS_TABLE)
            .select("event_id")
            .eq("event_id", event_id)
            .limit(1)
            .execute(),
            operation_name="is_event_processed",
        )
    except Exception as e:
        _log_schema_hint_once(e)
        logger.error(f"Webhook dedup lookup failed for {event_id}, processing anyway: {e}")
        return False

    if result.data:
        logger.info(f"Webhook event {event_id} was already processed")
        return True
    return False


def record_processed_event(
    event_id: str,
    event_type: str,
    account_id: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> bool:
    """
    Record ``event_id`` as processed.

    Returns:
        True if this call wrote the row, False if another delivery had
        already recorded it or the write failed
    """
    row = _event_row(event_id, event_type, account_id, metadata)
    try:
        result = execute_with_retry(
            lambda client: client.table(EVENTS_TABLE)
            .upsert(row, on_conflict="event_id", ignore_duplicates=True)
            .execute(),
            operation_name="record_processed_event",
        )
    except Exception as e:
        _log_schema_hint_once(e)
        logger.error(f"Could not record webhook event {event_id} ({event_type}): {e}")
        return False

    if not result.data:
        logger.info(f"Webhook event {event_id} was recorded by a concurrent delivery")
        return False

    logger.info(f"Recorded webhook event {event_id} ({event_type})")
    return True
