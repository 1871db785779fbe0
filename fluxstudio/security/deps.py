"""
FastAPI Security Dependencies
Resolve the calling account from a Supabase Auth access token.
"""

import logging

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from fluxstudio.config.config import Config
from fluxstudio.config.supabase_config import get_supabase_client
from fluxstudio.db.accounts import get_or_create_account
from fluxstudio.models.subscription import Account
from fluxstudio.utils.exceptions import APIExceptions
from fluxstudio.utils.security_validators import sanitize_for_logging

logger = logging.getLogger(__name__)

# auto_error=False so a missing header yields our 401 body instead of FastAPI's 403
security = HTTPBearer(auto_error=False)


def _identity_from_token(token: str) -> dict | None:
    """
    Validate ``token`` with Supabase Auth.

    Returns:
        {"id", "email", "first_name", "last_name"} or None if the token is invalid
    """
    client = get_supabase_client()
    try:
        response = client.auth.get_user(token)
    except Exception as e:
        logger.info(f"Rejected access token: {sanitize_for_logging(str(e))}")
        return None

    user = getattr(response, "user", None)
    if user is None or not getattr(user, "id", None):
        return None

    metadata = getattr(user, "user_metadata", None) or {}
    return {
        "id": str(user.id),
        "email": getattr(user, "email", None),
        "first_name": metadata.get("first_name") or metadata.get("given_name"),
        "last_name": metadata.get("last_name") or metadata.get("family_name"),
    }


def _dev_account() -> Account | None:
    if not (Config.IS_DEVELOPMENT and Config.DEV_ACCOUNT_ID):
        return None
    logger.debug("Using development account for local environment")
    return get_or_create_account(Config.DEV_ACCOUNT_ID, email=Config.DEV_ACCOUNT_EMAIL)


async def get_current_account(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> Account:
    """
    The authenticated account, created on first sight as a free-tier account.

    Raises:
        HTTPException: 401 if the token is missing or invalid
    """
    if not credentials or not credentials.credentials:
        dev_account = _dev_account()
        if dev_account is not None:
            return dev_account
        raise APIExceptions.unauthorized("Authorization header is required")

    identity = _identity_from_token(credentials.credentials)
    if identity is None:
        raise APIExceptions.unauthorized("Invalid or expired token")

    try:
        return get_or_create_account(
            identity["id"],
            email=identity["email"],
            first_name=identity["first_name"],
            last_name=identity["last_name"],
        )
    except Exception as e:
        logger.error(f"Failed to load account {sanitize_for_logging(identity['id'])}: {e}")
        raise HTTPException(status_code=500, detail="Internal authentication error") from e
