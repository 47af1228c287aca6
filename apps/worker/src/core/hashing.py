import hashlib
from typing import Iterable

from constants import EMBEDDING_BODY_MAX_CHARS


def content_hash(
    title: str,
    body: str | None,
    labels: Iterable[str],
    milestone_title: str | None,
    target_version: str | None,
) -> str:
    """SHA256 over the mutable issue fields; label order does not matter."""
    parts = [
        title or "",
        body or "",
        ",".join(sorted(labels or [])),
        milestone_title or "",
        target_version or "",
    ]
    return hashlib.sha256("\n".join(parts).encode("utf-8")).hexdigest()


def build_embedding_text(title: str, body: str | None) -> str:
    """Title plus the first EMBEDDING_BODY_MAX_CHARS of the trimmed body."""
    cleaned_body = (body or "").strip()[:EMBEDDING_BODY_MAX_CHARS]
    return f"{title}\n\n{cleaned_body}".strip()


def embedding_input_hash(title: str, body: str | None) -> str:
    """Identical embedding input gives an identical hash, enabling vector reuse."""
    text = build_embedding_text(title, body)
    return hashlib.sha256(text.encode("utf-8")).hexdigest()
