"""
Typed views of the GitHub and embedding API payloads.

Only the fields the pipeline reads are declared; extra keys are ignored.
A payload missing a required field fails validation at the client boundary.
"""
from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class GitHubLabel(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: Optional[str] = None


class GitHubMilestone(BaseModel):
    model_config = ConfigDict(extra="ignore")

    title: Optional[str] = None


class GitHubReactions(BaseModel):
    model_config = ConfigDict(extra="ignore")

    total_count: int = 0


class GitHubIssue(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: int
    number: int
    title: str
    body: Optional[str] = None
    state: Literal["open", "closed"]
    created_at: datetime
    updated_at: datetime
    closed_at: Optional[datetime] = None
    labels: list[GitHubLabel] = Field(default_factory=list)
    milestone: Optional[GitHubMilestone] = None
    comments: int = 0
    reactions: Optional[GitHubReactions] = None
    # Present only when the item is a pull request
    pull_request: Optional[dict[str, Any]] = None

    @field_validator("title", "body")
    @classmethod
    def strip_nul(cls, value: Optional[str]) -> Optional[str]:
        # Postgres text columns reject NUL characters
        return value.replace("\x00", "") if value else value

    @property
    def is_pull_request(self) -> bool:
        return self.pull_request is not None

    @property
    def label_names(self) -> list[str]:
        return [label.name for label in self.labels if label.name]

    @property
    def milestone_title(self) -> Optional[str]:
        return self.milestone.title if self.milestone else None

    @property
    def reactions_total(self) -> int:
        return self.reactions.total_count if self.reactions else 0


class GitHubRelease(BaseModel):
    model_config = ConfigDict(extra="ignore")

    tag_name: Optional[str] = None
    name: Optional[str] = None
    html_url: Optional[str] = None
    published_at: Optional[datetime] = None


class EmbeddingData(BaseModel):
    model_config = ConfigDict(extra="ignore")

    embedding: list[float]


class EmbeddingResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    data: list[EmbeddingData] = Field(..., min_length=1)
