"""
Shared constants for the issue clustering pipeline;
centralized for maintainability across the worker and dashboard readers
"""

# Product label every issue falls back to when no area could be derived
UNCATEGORIZED_PRODUCT_LABEL: str = "Product-Uncategorized"

# Issue labels carrying a product area, e.g. "Product-FancyZones", "Area-Setup"
PRODUCT_LABEL_PREFIXES: tuple[str, ...] = ("product-", "area-")

# Stored in place of a NULL target version; cluster tables require NOT NULL
ALL_VERSIONS_PLACEHOLDER: str = "__all__"

# Issue form headings parsed out of issue bodies
DEFAULT_VERSION_FIELD: str = "Microsoft PowerToys version"
DEFAULT_AREA_FIELD: str = "Area(s) with issue?"

# Issue forms render unanswered optional fields with this text
NO_RESPONSE_PLACEHOLDER: str = "_No response_"

# Area lines longer than this are free-text description, not area names
MAX_AREA_LINE_LENGTH: int = 80

# Issue type labels mapped to their normalized type
ISSUE_TYPE_LABELS: dict[str, str] = {
    "issue-bug": "bug",
    "issue-feature": "feature",
    "issue-docs": "docs",
    "issue-translation": "translation",
    "issue-task": "task",
    "issue-refactoring": "refactoring",
    "issue-dcr": "dcr",
    "issue-question": "question",
}

# Embedding input is title plus the leading part of the body
EMBEDDING_BODY_MAX_CHARS: int = 12000

# Stored body snippet for list views
BODY_SNIPPET_MAX_CHARS: int = 500

# Popularity weights (log-scaled engagement plus recency)
POPULARITY_COMMENTS_WEIGHT: float = 2.0
POPULARITY_REACTIONS_WEIGHT: float = 1.0
RECENCY_FULL_DAYS: float = 1.0
RECENCY_ZERO_DAYS: float = 30.0
