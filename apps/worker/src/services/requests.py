"""Inbound job payloads. Accepts snake_case or the queue's camelCase keys."""
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class JobRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    repo_full_name: str = Field(..., pattern=r"^[^/\s]+/[^/\s]+$")


class IssueSyncRequest(JobRequest):
    full_sync: bool = False


class IssueReclusterRequest(JobRequest):
    product_label: str = Field(..., min_length=1)
    threshold: float = Field(..., ge=0.0, le=1.0)
    top_k: int = Field(..., ge=1, le=100)
    target_version: Optional[str] = None
