"""
fal.ai client for the image operations behind the credit gate.

Premium and premium-plus accounts get the FLUX Kontext "max" variants and
Aura-SR for 4x upscaling; everyone else gets the standard models.
"""

import logging
from typing import Any

import httpx

from fluxstudio.config.config import Config
from fluxstudio.models.subscription import PREMIUM_TIERS, SubscriptionTier
from fluxstudio.services.prometheus_metrics import track_fal_request
from fluxstudio.utils.exceptions import ExternalOperationError
from fluxstudio.utils.security_validators import sanitize_for_logging
from fluxstudio.utils.sentry_context import capture_provider_error

logger = logging.getLogger(__name__)

FAL_API_BASE = "https://fal.run"

GENERATE_MODEL = "fal-ai/flux-pro/kontext/text-to-image"
GENERATE_MODEL_MAX = "fal-ai/flux-pro/kontext/max/text-to-image"
EDIT_MODEL = "fal-ai/flux-pro/kontext"
EDIT_MODEL_MAX = "fal-ai/flux-pro/kontext/max"
MULTI_GENERATE_MODEL = "fal-ai/flux-pro/kontext/max/multi"
UPSCALE_MODEL = "fal-ai/esrgan"
UPSCALE_MODEL_4X_PREMIUM = "fal-ai/aura-sr"

EDIT_SAFETY_TOLERANCE = 5


def _is_premium(tier: SubscriptionTier | str) -> bool:
    return SubscriptionTier(tier) in PREMIUM_TIERS


def generate_model_for(tier: SubscriptionTier | str) -> str:
    return GENERATE_MODEL_MAX if _is_premium(tier) else GENERATE_MODEL


def edit_model_for(tier: SubscriptionTier | str) -> str:
    return EDIT_MODEL_MAX if _is_premium(tier) else EDIT_MODEL


def extract_image_url(fal_response: dict[str, Any]) -> str | None:
    """First image URL from a fal.ai response (``images`` list or single ``image``)."""
    images = fal_response.get("images")
    if isinstance(images, list) and images:
        first = images[0]
        if isinstance(first, dict):
            return first.get("url")
        if isinstance(first, str):
            return first

    image = fal_response.get("image")
    if isinstance(image, dict):
        return image.get("url")
    if isinstance(image, str):
        return image

    return None


def make_fal_request(model: str, payload: dict[str, Any]) -> dict[str, Any]:
    """
    Run a fal.ai model synchronously and return its JSON output.

    Raises:
        ExternalOperationError: If the key is missing or the call fails
    """
    if not Config.FAL_API_KEY:
        logger.error("FAL_API_KEY not configured")
        raise ExternalOperationError("fal", "Image service is not configured")

    api_url = f"{FAL_API_BASE}/{model}"
    headers = {
        "Authorization": f"Key {Config.FAL_API_KEY}",
        "Content-Type": "application/json",
    }

    try:
        logger.info(f"Making Fal.ai request to {api_url}")
        with track_fal_request(model):
            with httpx.Client(timeout=Config.FAL_REQUEST_TIMEOUT) as client:
                response = client.post(api_url, headers=headers, json=payload)
                response.raise_for_status()
                return response.json()

    except httpx.HTTPStatusError as e:
        logger.error(
            f"Fal.ai HTTP {e.response.status_code} error for model {model}: {e.response.text[:500]}"
        )
        capture_provider_error(e, provider="fal", model=model, endpoint=api_url)
        raise ExternalOperationError("fal", f"Model {model} returned HTTP {e.response.status_code}") from e
    except httpx.RequestError as e:
        logger.error(f"Fal.ai request error for model {model}: {e}")
        capture_provider_error(e, provider="fal", model=model, endpoint=api_url)
        raise ExternalOperationError("fal", f"Model {model} request failed") from e


def _run_for_url(model: str, payload: dict[str, Any], what: str) -> str:
    url = extract_image_url(make_fal_request(model, payload))
    if not url:
        raise ExternalOperationError("fal", f"No {what} image returned from {model}")
    logger.info(f"Fal.ai {what} completed with model {model}")
    return url


def generate_image(prompt: str, tier: SubscriptionTier | str) -> str:
    logger.info(f"Generating image for tier {SubscriptionTier(tier).value}: {sanitize_for_logging(prompt[:80])}")
    return _run_for_url(generate_model_for(tier), {"prompt": prompt}, "generated")


def edit_image(image_url: str, prompt: str, tier: SubscriptionTier | str) -> str:
    payload = {
        "prompt": prompt,
        "image_url": image_url,
        "safety_tolerance": EDIT_SAFETY_TOLERANCE,
    }
    return _run_for_url(edit_model_for(tier), payload, "edited")


def multi_generate_image(prompt: str, image_urls: list[str]) -> str:
    return _run_for_url(MULTI_GENERATE_MODEL, {"prompt": prompt, "image_urls": image_urls}, "multi-generated")


def upscale_image(image_url: str, scale: int, tier: SubscriptionTier | str) -> str:
    if scale == 4 and _is_premium(tier):
        return _run_for_url(UPSCALE_MODEL_4X_PREMIUM, {"image_url": image_url}, "upscaled")
    payload = {"image_url": image_url, "model": "RealESRGAN_x4plus", "scale": scale}
    return _run_for_url(UPSCALE_MODEL, payload, "upscaled")
