"""Upload-token handoff models."""

from typing import Optional

from pydantic import Field

from furvino_ingest.models.upload import CamelModel


class CreateUploadTokenRequest(CamelModel):
    target_folder: str = ""
    ttl_seconds: Optional[int] = Field(default=None, gt=0)


class UploadTokenResponse(CamelModel):
    """Credentials a client needs to upload straight into the backend."""

    share_url_token: str = Field(alias="shareURLToken")
    share_token: str
    share_id: int = Field(alias="shareID")
    parent_node_id: int = Field(alias="parentNodeID")
    expires_at: int
    stack_api_url: str


class RevokeUploadTokenRequest(CamelModel):
    share_id: int = Field(alias="shareID")
