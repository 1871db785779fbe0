"""
Supabase client lifecycle.

One client per process, built lazily. Its PostgREST session is swapped for a
pooled HTTP/2 httpx client. A failed build is remembered for
``INIT_FAILURE_COOLDOWN`` seconds so a misconfigured or unreachable project
fails fast instead of on every request.

All table and RPC access goes through ``execute_with_retry``, which rebuilds
the client when a pooled HTTP/2 connection has gone stale.
"""

import logging
import time

import httpx
import sentry_sdk
from supabase import Client, create_client
from supabase.client import ClientOptions

from fluxstudio.config.config import Config

logger = logging.getLogger(__name__)

INIT_FAILURE_COOLDOWN = 60.0
RETRY_BACKOFF_SECONDS = 0.1

STALE_CONNECTION_MARKERS = (
    "connectionstate.closed",
    "stream closed",
    "connection reset by peer",
    "goaway",
    "h2_error",
    "http2 error",
)

_client: Client | None = None
_init_failure: tuple[Exception, float] | None = None


def _rest_session() -> httpx.Client:
    return httpx.Client(
        base_url=f"{Config.SUPABASE_URL}/rest/v1",
        headers={
            "apikey": Config.SUPABASE_KEY,
            "Authorization": f"Bearer {Config.SUPABASE_KEY}",
        },
        timeout=httpx.Timeout(30.0, connect=10.0),
        limits=httpx.Limits(max_connections=50, max_keepalive_connections=20),
        http2=True,
    )


def _build_client() -> Client:
    Config.validate()
    if not Config.SUPABASE_URL.startswith(("http://", "https://")):
        raise RuntimeError(f"SUPABASE_URL must be an http(s) URL, got '{Config.SUPABASE_URL}'")

    logger.info(f"Connecting to Supabase at {Config.SUPABASE_URL[:30]}...")
    client = create_client(
        supabase_url=Config.SUPABASE_URL,
        supabase_key=Config.SUPABASE_KEY,
        options=ClientOptions(
            postgrest_client_timeout=30,
            storage_client_timeout=60,
            schema="public",
            headers={"X-Client-Info": "fluxstudio-api/1.0"},
        ),
    )
    if hasattr(client, "postgrest") and hasattr(client.postgrest, "session"):
        client.postgrest.session = _rest_session()
    return client


def _report_init_failure(error: Exception) -> None:
    logger.error(f"Supabase client could not be built: {type(error).__name__}: {error}", exc_info=True)
    with sentry_sdk.push_scope() as scope:
        scope.set_tag("component", "supabase_client")
        scope.set_context(
            "supabase_config",
            {
                "supabase_url_set": bool(Config.SUPABASE_URL),
                "supabase_key_set": bool(Config.SUPABASE_KEY),
            },
        )
        sentry_sdk.capture_exception(error)


def get_supabase_client() -> Client:
    """
    Return the shared client, building it on first use.

    Raises:
        RuntimeError: If the client cannot be built, or a recent build
            failed and the cooldown has not elapsed
    """
    global _client, _init_failure

    if _client is not None:
        return _client

    if _init_failure is not None:
        error, failed_at = _init_failure
        remaining = INIT_FAILURE_COOLDOWN - (time.monotonic() - failed_at)
        if remaining > 0:
            raise RuntimeError(f"Supabase unavailable (retry in {int(remaining)}s): {error}") from error
        _init_failure = None

    try:
        _client = _build_client()
    except Exception as e:
        _init_failure = (e, time.monotonic())
        _report_init_failure(e)
        raise RuntimeError(f"Supabase client initialization failed: {e}") from e
    return _client


def reset_supabase_client() -> bool:
    """Discard the shared client and its connection pool. Returns False if none was built."""
    global _client, _init_failure

    if _client is None:
        return False

    session = getattr(getattr(_client, "postgrest", None), "session", None)
    if session is not None and hasattr(session, "close"):
        try:
            session.close()
        except Exception as e:
            logger.debug(f"Ignoring error while closing stale Supabase session: {e}")

    _client = None
    _init_failure = None
    logger.info("Supabase client discarded; the next query opens a fresh pool")
    return True


def is_http2_protocol_error(error: Exception) -> bool:
    """A dropped or reset pooled connection, as opposed to a query error."""
    if isinstance(error, httpx.RemoteProtocolError) or "protocolerror" in type(error).__name__.lower():
        return True
    message = str(error).lower()
    return any(marker in message for marker in STALE_CONNECTION_MARKERS)


def execute_with_retry(operation, max_retries: int = 2, operation_name: str = "database operation"):
    """
    Run ``operation(client)``; on a stale-connection error, rebuild the client
    and try again up to ``max_retries`` more times.

    Any other error propagates immediately.

    Example:
        result = execute_with_retry(
            lambda client: client.table("accounts").select("*").eq("id", account_id).execute(),
            operation_name="get_account",
        )
    """
    attempts = max_retries + 1
    for attempt in range(1, attempts + 1):
        try:
            return operation(get_supabase_client())
        except Exception as e:
            if not is_http2_protocol_error(e):
                raise
            if attempt == attempts:
                logger.error(f"{operation_name} failed on a stale connection after {attempts} attempts: {e}")
                raise
            logger.warning(
                f"{operation_name} hit a stale connection (attempt {attempt}/{attempts}), reconnecting: {e}"
            )
            reset_supabase_client()
            time.sleep(RETRY_BACKOFF_SECONDS * attempt)


def test_connection() -> bool:
    """
    Run a trivial query against the accounts table.

    Raises:
        RuntimeError: If the query fails
    """
    try:
        execute_with_retry(
            lambda client: client.table("accounts").select("id").limit(1).execute(),
            operation_name="test_connection",
        )
    except Exception as e:
        logger.error(f"Database connection test failed: {e}")
        raise RuntimeError(f"Database connection failed: {e}") from e
    logger.info("Database connection test successful")
    return True


def init_db():
    test_connection()
