from pydantic import BaseModel, Field


class GenerateImageRequest(BaseModel):
    prompt: str | None = None


class EditImageRequest(BaseModel):
    prompt: str | None = None


class RevertImageRequest(BaseModel):
    historyIndex: int | None = Field(
        None, description="Index into the edit history; -1 restores the original upload"
    )


class UpscaleImageRequest(BaseModel):
    scale: int = Field(2, description="Upscale factor, 2 or 4")


class UpscaleImageResponse(BaseModel):
    upscaledImageUrl: str


class DeleteImageResponse(BaseModel):
    message: str
