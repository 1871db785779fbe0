import os

from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


def _get_env_var(name: str, default: str | None = None, *, strip: bool = True) -> str | None:
    """
    Fetch an environment variable with optional whitespace trimming.

    Args:
        name: Environment variable to look up.
        default: Value to return when the env var is unset or empty.
        strip: Whether to strip leading/trailing whitespace (default: True).

    Returns:
        The normalized string value or the provided default when empty.
    """
    value = os.environ.get(name)
    if value is None:
        return default

    if strip:
        value = value.strip()

    return value or default


def _get_bool_env(name: str, default: bool = False) -> bool:
    value = _get_env_var(name)
    if value is None:
        return default
    return value.lower() in {"1", "true", "yes", "on"}


class Config:
    """Configuration class for the application"""

    # Environment Detection
    APP_ENV = os.environ.get("APP_ENV", "development")  # development, staging, production
    IS_PRODUCTION = APP_ENV == "production"
    IS_STAGING = APP_ENV == "staging"
    IS_DEVELOPMENT = APP_ENV == "development"
    IS_TESTING = APP_ENV in {"testing", "test"} or os.environ.get("TESTING", "").lower() in {
        "1",
        "true",
        "yes",
    }

    # Supabase Configuration
    SUPABASE_URL = _get_env_var("SUPABASE_URL")
    SUPABASE_KEY = _get_env_var("SUPABASE_KEY")

    # Storage bucket holding uploaded and generated images
    IMAGE_BUCKET = _get_env_var("IMAGE_BUCKET", "images")
    MAX_UPLOAD_BYTES = int(_get_env_var("MAX_UPLOAD_BYTES", str(10 * 1024 * 1024)))

    # Stripe Configuration
    STRIPE_SECRET_KEY = _get_env_var("STRIPE_SECRET_KEY")
    STRIPE_WEBHOOK_SECRET = _get_env_var("STRIPE_WEBHOOK_SECRET")
    STRIPE_PRICE_BASIC = _get_env_var("STRIPE_PRICE_BASIC")
    STRIPE_PRICE_PREMIUM = _get_env_var("STRIPE_PRICE_PREMIUM")
    STRIPE_PRICE_PREMIUM_PLUS = _get_env_var("STRIPE_PRICE_PREMIUM_PLUS")

    # Fal.ai Configuration
    FAL_API_KEY = _get_env_var("FAL_API_KEY")
    FAL_REQUEST_TIMEOUT = float(_get_env_var("FAL_REQUEST_TIMEOUT", "120.0"))

    FRONTEND_URL = _get_env_var("FRONTEND_URL", "http://localhost:5173")

    # Development-only authentication bypass
    DEV_ACCOUNT_ID = _get_env_var("DEV_ACCOUNT_ID")
    DEV_ACCOUNT_EMAIL = _get_env_var("DEV_ACCOUNT_EMAIL", "dev@localhost")

    # Sentry Configuration
    SENTRY_DSN = _get_env_var("SENTRY_DSN")
    SENTRY_ENABLED = _get_bool_env("SENTRY_ENABLED", default=False)
    SENTRY_ENVIRONMENT = _get_env_var("SENTRY_ENVIRONMENT", APP_ENV)
    SENTRY_RELEASE = _get_env_var("SENTRY_RELEASE")

    @classmethod
    def validate(cls):
        """Validate that all required environment variables are set"""
        missing_vars = []

        if not cls.SUPABASE_URL:
            missing_vars.append("SUPABASE_URL")
        if not cls.SUPABASE_KEY:
            missing_vars.append("SUPABASE_KEY")

        if missing_vars:
            raise RuntimeError(
                f"Missing required environment variables: {', '.join(missing_vars)}\n"
                "Please create a .env file with the following variables:\n"
                "SUPABASE_URL=your_supabase_project_url\n"
                "SUPABASE_KEY=your_supabase_service_role_key\n"
                "STRIPE_SECRET_KEY=your_stripe_secret_key (billing)\n"
                "FAL_API_KEY=your_fal_api_key (image operations)"
            )

        return True

    @classmethod
    def price_ids(cls) -> dict[str, str | None]:
        """Configured Stripe price IDs keyed by tier name."""
        return {
            "basic": cls.STRIPE_PRICE_BASIC,
            "premium": cls.STRIPE_PRICE_PREMIUM,
            "premium-plus": cls.STRIPE_PRICE_PREMIUM_PLUS,
        }
