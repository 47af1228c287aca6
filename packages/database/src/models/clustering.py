from uuid import UUID, uuid4
from datetime import datetime
from typing import List, Optional
import sqlalchemy as sa
from sqlmodel import SQLModel, Field, Column
from pgvector.sqlalchemy import Vector


class Cluster(SQLModel, table=True):
    __table_args__ = (
        sa.Index("ix_cluster_bucket", "repo", "target_version", "product_label"),
        # Cluster listing orders by popularity within a product
        sa.Index("ix_cluster_repo_product_popularity", "repo", "product_label", "popularity", "size"),
        {"schema": "clustering"},
    )

    cluster_id: UUID = Field(default_factory=uuid4, primary_key=True)
    repo: str
    target_version: str
    product_label: str

    threshold_used: float
    topk_used: int

    centroid: List[float] = Field(sa_column=Column(Vector(), nullable=False))
    size: int = Field(default=0)
    popularity: float = Field(default=0.0)
    representative_issue_number: Optional[int] = Field(default=None)

    created_at: datetime = Field(
        sa_column=sa.Column(
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        )
    )
    updated_at: datetime = Field(
        sa_column=sa.Column(
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        )
    )


class IssueClusterMap(SQLModel, table=True):
    __table_args__ = (
        sa.ForeignKeyConstraint(
            ["repo", "issue_number"],
            ["ingestion.issue.repo", "ingestion.issue.issue_number"],
            ondelete="CASCADE",
        ),
        sa.Index("ix_issueclustermap_bucket_cluster", "repo", "target_version", "product_label", "cluster_id"),
        {"schema": "clustering"},
    )

    repo: str = Field(primary_key=True)
    issue_number: int = Field(primary_key=True)
    target_version: str = Field(primary_key=True)
    product_label: str = Field(primary_key=True)
    cluster_id: UUID = Field(
        sa_column=sa.Column(
            sa.Uuid,
            sa.ForeignKey("clustering.cluster.cluster_id", ondelete="CASCADE"),
            nullable=False,
        )
    )
    similarity: float
    assigned_at: datetime = Field(
        sa_column=sa.Column(
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        )
    )
