from sqlmodel import SQLModel

from models.ingestion import Issue, IssueProduct, IssueSyncState, RepoReleaseState
from models.clustering import Cluster, IssueClusterMap

__all__ = [
    "SQLModel",
    "Issue",
    "IssueProduct",
    "IssueSyncState",
    "RepoReleaseState",
    "Cluster",
    "IssueClusterMap",
]
