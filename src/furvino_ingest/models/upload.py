"""Upload session data models."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Base model serialized with camelCase keys on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class InitUploadRequest(CamelModel):
    """Request model for opening an upload session."""

    target_folder: str
    filename: str = Field(min_length=1)
    total_size: Optional[int] = Field(default=None, ge=0)
    part_size: Optional[int] = Field(default=None, gt=0)


class InitUploadResponse(CamelModel):
    """Response model for upload session creation."""

    upload_id: str
    part_size: int
    filename: str
    target_folder: str
    stack_path: str


class UploadMetaResponse(CamelModel):
    id: str
    filename: str
    target_folder: str
    part_size: int
    total_size: Optional[int] = None
    stack_path: str
    created_at: datetime


class UploadStatusResponse(CamelModel):
    """Parts received so far for a session."""

    meta: UploadMetaResponse
    parts: list[int]


class PartUploadResponse(CamelModel):
    ok: bool = True
    part: int
    size_bytes: int


class CompleteUploadRequest(CamelModel):
    total_parts: Optional[int] = Field(default=None, gt=0)


class CompleteUploadResponse(CamelModel):
    """Response model for a finalized upload."""

    ok: bool = True
    stack_path: str
    size_bytes: int
    share_url: Optional[str] = None
