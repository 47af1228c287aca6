from typing import List, Optional, Dict
from datetime import datetime
import sqlalchemy as sa
from sqlmodel import SQLModel, Field, Column
from sqlalchemy.dialects.postgresql import JSONB
from pgvector.sqlalchemy import Vector


class Issue(SQLModel, table=True):
    __table_args__ = (
        sa.Index("ix_issue_repo_state_updated", "repo", "state", "updated_at"),
        sa.Index("ix_issue_repo_target_version_updated", "repo", "target_version", "updated_at"),
        # Embedding reuse lookup; only rows that carry a vector are candidates
        sa.Index(
            "ix_issue_repo_embedding_input",
            "repo",
            "embedding_model",
            "embedding_input_hash",
            postgresql_where=sa.text("embedding is not null and embedding_input_hash is not null"),
        ),
        {"schema": "ingestion"},
    )

    repo: str = Field(primary_key=True)
    issue_number: int = Field(primary_key=True)
    gh_id: int = Field(sa_column=sa.Column(sa.BigInteger, nullable=False))

    title: str
    body: Optional[str] = Field(default=None, sa_column=sa.Column(sa.Text, nullable=True))
    body_snip: Optional[str] = Field(default=None)

    labels: List[Dict] = Field(
        default_factory=list,
        sa_column=Column(JSONB, nullable=False, server_default=sa.text("'[]'::jsonb")),
    )
    milestone_title: Optional[str] = Field(default=None)
    target_version: Optional[str] = Field(default=None)
    issue_type: Optional[str] = Field(default=None)

    # GitHub issue state: open or closed
    state: str = Field(default="open")
    created_at: datetime = Field(sa_column=sa.Column(sa.DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=sa.Column(sa.DateTime(timezone=True), nullable=False))
    closed_at: Optional[datetime] = Field(
        default=None,
        sa_column=sa.Column(sa.DateTime(timezone=True), nullable=True),
    )

    comments_count: int = Field(default=0)
    reactions_total_count: int = Field(default=0)

    # Idempotency
    content_hash: str = Field(max_length=64)

    # Embedding triple: all null or all set
    embedding: Optional[List[float]] = Field(default=None, sa_column=Column(Vector(), nullable=True))
    embedding_model: Optional[str] = Field(default=None)
    embedding_input_hash: Optional[str] = Field(default=None, max_length=64)

    fetched_at: datetime = Field(
        sa_column=sa.Column(
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        )
    )


class IssueProduct(SQLModel, table=True):
    __table_args__ = (
        sa.ForeignKeyConstraint(
            ["repo", "issue_number"],
            ["ingestion.issue.repo", "ingestion.issue.issue_number"],
            ondelete="CASCADE",
        ),
        sa.Index("ix_issueproduct_repo_label", "repo", "product_label"),
        {"schema": "ingestion"},
    )

    repo: str = Field(primary_key=True)
    issue_number: int = Field(primary_key=True)
    product_label: str = Field(primary_key=True)


class IssueSyncState(SQLModel, table=True):
    __table_args__ = {"schema": "ingestion"}

    repo: str = Field(primary_key=True)
    last_synced_at: Optional[datetime] = Field(
        default=None,
        sa_column=sa.Column(sa.DateTime(timezone=True), nullable=True),
    )
    last_synced_issue_number: Optional[int] = Field(default=None)

    # Progress reporting for dashboards
    estimated_total_issues: Optional[int] = Field(default=None)
    is_syncing: bool = Field(default=False)

    updated_at: datetime = Field(
        sa_column=sa.Column(
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        )
    )


class RepoReleaseState(SQLModel, table=True):
    __table_args__ = {"schema": "ingestion"}

    repo: str = Field(primary_key=True)
    latest_release_tag: Optional[str] = Field(default=None)
    latest_release_name: Optional[str] = Field(default=None)
    latest_release_url: Optional[str] = Field(default=None)
    latest_release_version: Optional[str] = Field(default=None)
    latest_release_published_at: Optional[datetime] = Field(
        default=None,
        sa_column=sa.Column(sa.DateTime(timezone=True), nullable=True),
    )
    updated_at: datetime = Field(
        sa_column=sa.Column(
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        )
    )
