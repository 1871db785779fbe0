"""
Image Routes

Uploads, the credit-charged fal.ai operations (generate, multi-generate,
edit, upscale) and history navigation. Every charged operation goes through
``operation_gate.charge``: the balance is checked before fal.ai is called
and deducted only after the result has been stored.
"""

import logging
import time

from fastapi import APIRouter, Depends, File, Form, UploadFile

from fluxstudio.config.config import Config
from fluxstudio.db import images as images_db
from fluxstudio.models.image import EditHistoryItem, ImageRecord
from fluxstudio.models.subscription import Account, OperationKind
from fluxstudio.routes.helpers.executor import run_sync
from fluxstudio.schemas.images import (
    DeleteImageResponse,
    EditImageRequest,
    GenerateImageRequest,
    RevertImageRequest,
    UpscaleImageRequest,
    UpscaleImageResponse,
)
from fluxstudio.security.deps import get_current_account
from fluxstudio.services import fal_image_client, object_storage, operation_gate
from fluxstudio.services.operation_gate import DenialReason, GateDecision
from fluxstudio.utils.exceptions import APIExceptions, ExternalOperationError
from fluxstudio.utils.security_validators import sanitize_for_logging, validate_image_upload

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/images", tags=["Images"])

MIN_MULTI_IMAGES = 2
MAX_MULTI_IMAGES = 5


def _denial_exception(decision: GateDecision):
    if decision.reason == DenialReason.REQUIRES_UPGRADE:
        return APIExceptions.requires_upgrade(decision.message)
    return APIExceptions.insufficient_credits(
        credits=decision.credits,
        required_credits=decision.required_credits,
        message=decision.message,
    )


def _require_prompt(prompt: str | None) -> str:
    if not prompt or not prompt.strip():
        raise APIExceptions.bad_request("Prompt is required")
    return prompt


async def _owned_image(image_id: int, account: Account, action: str = "access") -> ImageRecord:
    image = await run_sync(images_db.get_image, image_id)
    if image is None:
        raise APIExceptions.not_found("Image")
    if image.account_id != account.id:
        logger.warning(
            f"Account {sanitize_for_logging(account.id)} tried to {action} image {image_id}"
        )
        raise APIExceptions.forbidden(f"Unauthorized to {action} this image")
    return image


def _permanent_url(account_id: str, fal_url: str, prefix: str) -> str:
    """fal.ai result URLs expire; keep a copy, or the fal URL if copying fails."""
    return object_storage.store_from_url(account_id, fal_url, f"{prefix}-{int(time.time() * 1000)}.png") or fal_url


async def _charged(account: Account, operation: OperationKind, run, failure: str, upscale_factor=None):
    try:
        outcome = await run_sync(
            operation_gate.charge, account, operation, run, upscale_factor=upscale_factor
        )
    except ExternalOperationError as e:
        raise APIExceptions.provider_error(failure, e) from e

    if not outcome.decision.allowed:
        raise _denial_exception(outcome.decision)
    return outcome.result


async def _read_upload(upload: UploadFile) -> bytes:
    data = await upload.read()
    error = validate_image_upload(upload.content_type, len(data), Config.MAX_UPLOAD_BYTES)
    if error:
        raise APIExceptions.bad_request(error)
    return data


@router.post("/upload")
async def upload_image(
    image: UploadFile | None = File(None), account: Account = Depends(get_current_account)
):
    if image is None:
        raise APIExceptions.bad_request("No image file provided")

    data = await _read_upload(image)
    try:
        url = await run_sync(
            object_storage.store, account.id, data, image.filename or "upload.png", image.content_type
        )
    except ExternalOperationError as e:
        raise APIExceptions.provider_error("upload image", e) from e

    record = await run_sync(images_db.create_image, account.id, url)
    return record.to_dict()


@router.post("/generate")
async def generate_image(body: GenerateImageRequest, account: Account = Depends(get_current_account)):
    prompt = _require_prompt(body.prompt)

    def _run() -> ImageRecord:
        fal_url = fal_image_client.generate_image(prompt, account.subscription_tier)
        url = _permanent_url(account.id, fal_url, "generated")
        return images_db.create_image(
            account.id,
            url,
            edit_history=[EditHistoryItem(prompt=f"Generated: {prompt}", image_url=url)],
        )

    record = await _charged(account, OperationKind.GENERATE, _run, "generate image")
    return record.to_dict()


@router.post("/multi-generate")
async def multi_generate_image(
    prompt: str | None = Form(None),
    images: list[UploadFile] | None = File(None),
    account: Account = Depends(get_current_account),
):
    prompt = _require_prompt(prompt)
    files = images or []
    if len(files) < MIN_MULTI_IMAGES:
        raise APIExceptions.bad_request("At least 2 images are required for multi-image generation")
    if len(files) > MAX_MULTI_IMAGES:
        raise APIExceptions.bad_request("Maximum 5 images allowed")

    sources = [(upload.filename or "input.png", upload.content_type, await _read_upload(upload)) for upload in files]

    def _run() -> ImageRecord:
        input_urls = [
            object_storage.store(account.id, data, filename, content_type)
            for filename, content_type, data in sources
        ]
        fal_url = fal_image_client.multi_generate_image(prompt, input_urls)
        url = _permanent_url(account.id, fal_url, "multi-generated")
        return images_db.create_image(
            account.id,
            url,
            edit_history=[EditHistoryItem(prompt=f"Multi-image generated: {prompt}", image_url=url)],
        )

    record = await _charged(account, OperationKind.MULTI_GENERATE, _run, "generate multi-image")
    return record.to_dict()


@router.post("/{image_id}/edit")
async def edit_image(
    image_id: int, body: EditImageRequest, account: Account = Depends(get_current_account)
):
    prompt = _require_prompt(body.prompt)
    image = await _owned_image(image_id, account)

    def _run() -> ImageRecord:
        fal_url = fal_image_client.edit_image(image.current_url, prompt, account.subscription_tier)
        url = _permanent_url(account.id, fal_url, "edited")
        history = image.edit_history + [EditHistoryItem(prompt=prompt, image_url=url)]
        updated = images_db.update_image(image.id, url, history)
        if updated is None:
            raise ExternalOperationError("storage", f"Image {image.id} vanished during edit")
        return updated

    record = await _charged(account, OperationKind.EDIT, _run, "edit image")
    return record.to_dict()


@router.post("/{image_id}/upscale", response_model=UpscaleImageResponse)
async def upscale_image(
    image_id: int,
    body: UpscaleImageRequest | None = None,
    account: Account = Depends(get_current_account),
):
    scale = body.scale if body is not None else 2
    # Tier restrictions answer before the factor is validated
    decision = operation_gate.authorize(account, OperationKind.UPSCALE, upscale_factor=scale)
    if not decision.allowed:
        raise _denial_exception(decision)
    if scale not in operation_gate.SUPPORTED_UPSCALE_FACTORS:
        raise APIExceptions.bad_request("Scale must be 2 or 4")
    image = await _owned_image(image_id, account)

    def _run() -> str:
        return fal_image_client.upscale_image(image.current_url, scale, account.subscription_tier)

    url = await _charged(account, OperationKind.UPSCALE, _run, "upscale image", upscale_factor=scale)
    return UpscaleImageResponse(upscaledImageUrl=url)


@router.post("/{image_id}/reset")
async def reset_image(image_id: int, account: Account = Depends(get_current_account)):
    image = await _owned_image(image_id, account)
    updated = await run_sync(images_db.update_image, image.id, image.original_url, [])
    return (updated or image).to_dict()


@router.post("/{image_id}/revert")
async def revert_image(
    image_id: int, body: RevertImageRequest, account: Account = Depends(get_current_account)
):
    """Step back to a history entry; -1 goes back to the original upload."""
    if body.historyIndex is None:
        raise APIExceptions.bad_request("History index is required")
    image = await _owned_image(image_id, account)

    index = body.historyIndex
    if index == -1:
        current_url, history = image.original_url, []
    elif 0 <= index < len(image.edit_history):
        history = image.edit_history[: index + 1]
        current_url = history[index].image_url
    else:
        raise APIExceptions.bad_request("Invalid history index")

    updated = await run_sync(images_db.update_image, image.id, current_url, history)
    return (updated or image).to_dict()


@router.get("")
async def list_images(account: Account = Depends(get_current_account)):
    records = await run_sync(images_db.list_images, account.id)
    return [record.to_dict() for record in records]


@router.get("/{image_id}")
async def get_image(image_id: int, account: Account = Depends(get_current_account)):
    image = await _owned_image(image_id, account)
    return image.to_dict()


@router.delete("/{image_id}", response_model=DeleteImageResponse)
async def delete_image(image_id: int, account: Account = Depends(get_current_account)):
    image = await _owned_image(image_id, account, action="delete")
    await run_sync(images_db.delete_image, image.id)

    urls = {image.original_url, image.current_url, *(item.image_url for item in image.edit_history)}
    for url in urls:
        await run_sync(object_storage.delete_by_url, url)

    return DeleteImageResponse(message="Image deleted successfully")
