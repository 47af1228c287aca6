"""
Derivation of target version, product labels and issue type from an issue.

Issue forms render each field as a "### Heading" followed by the answer;
structured fields win over labels, labels over nothing.
"""
import re
from typing import Iterable

from constants import (
    DEFAULT_AREA_FIELD,
    DEFAULT_VERSION_FIELD,
    ISSUE_TYPE_LABELS,
    MAX_AREA_LINE_LENGTH,
    NO_RESPONSE_PLACEHOLDER,
    PRODUCT_LABEL_PREFIXES,
    UNCATEGORIZED_PRODUCT_LABEL,
)


_HEADING_RE = re.compile(r"^###\s+")
_VERSION_RE = re.compile(r"(\d+)\.(\d+)(?:\.(\d+))?")
_WORD_SPLIT_RE = re.compile(r"[^a-zA-Z0-9]+")
_AREA_SPLIT_RE = re.compile(r"[,;/]+")


def extract_template_field(body: str | None, heading: str) -> str | None:
    """Returns the answer under "### {heading}", or None if absent or unanswered."""
    if not body:
        return None

    match = re.search(rf"^###\s+{re.escape(heading)}\s*$", body, re.IGNORECASE | re.MULTILINE)
    if match is None:
        return None

    lines = body[match.end():].splitlines()
    # splitlines drops the newline that ended the heading line
    if lines and lines[0].strip() == "":
        lines = lines[1:]

    i = 0
    while i < len(lines) and lines[i].strip() == "":
        i += 1

    collected = []
    while i < len(lines) and not _HEADING_RE.match(lines[i]):
        collected.append(lines[i])
        i += 1

    text = "\n".join(collected).strip()
    if not text or text == NO_RESPONSE_PLACEHOLDER:
        return None
    return text


def _strip_leading_zeros(raw: str) -> str:
    stripped = raw.lstrip("0")
    return stripped or "0"


def normalize_version(raw: str | None) -> str | None:
    """
    Canonicalizes user-entered versions to 0.x or 0.x.y.

    Shorthand like "90.1" becomes "0.90.1"; values that look like
    unrelated builds (e.g. Windows "10.0.22631") are rejected.
    """
    if not raw:
        return None
    text = raw.strip()
    match = _VERSION_RE.search(text)
    if match is None:
        return None

    a_raw, b_raw, c_raw = match.group(1), match.group(2), match.group(3)
    a, b = int(a_raw), int(b_raw)
    c = int(c_raw) if c_raw is not None else None

    if a == 0:
        if b > 299 or (c is not None and c > 99):
            return None
        return f"0.{b}" if c is None else f"0.{b}.{c}"

    # "90.1" => "0.90.1"; conservative so unrelated versions are not converted
    if c is None and 20 <= a <= 299 and b <= 99:
        return f"0.{_strip_leading_zeros(a_raw)}.{_strip_leading_zeros(b_raw)}"

    # "095.1.0" => "0.95.1"
    if c is not None and 20 <= a <= 299 and b <= 99 and c <= 99:
        return f"0.{_strip_leading_zeros(a_raw)}.{_strip_leading_zeros(b_raw)}"

    return None


def extract_reported_version(body: str | None, heading: str = DEFAULT_VERSION_FIELD) -> str | None:
    return normalize_version(extract_template_field(body, heading))


def derive_target_version(
    body: str | None,
    milestone_title: str | None,
    heading: str = DEFAULT_VERSION_FIELD,
) -> str | None:
    """Template field first, then the milestone title."""
    return extract_reported_version(body, heading) or normalize_version(milestone_title)


def normalize_area_to_product_label(area: str) -> str | None:
    """'Light Switch' -> 'Product-LightSwitch'."""
    words = [w for w in _WORD_SPLIT_RE.split(area) if w]
    if not words:
        return None
    return "Product-" + "".join(w[0].upper() + w[1:] for w in words)


def extract_area_product_labels(body: str | None, heading: str = DEFAULT_AREA_FIELD) -> list[str]:
    area = extract_template_field(body, heading)
    if not area:
        return []

    # Only the leading short lines name areas; a blank or long line starts free text
    area_lines = []
    for line in area.splitlines():
        trimmed = line.strip()
        if not trimmed or len(trimmed) > MAX_AREA_LINE_LENGTH:
            break
        area_lines.append(trimmed)

    labels = []
    for line in area_lines:
        for part in _AREA_SPLIT_RE.split(line):
            label = normalize_area_to_product_label(part.strip())
            if label:
                labels.append(label)
    return labels


def product_labels_from_issue_labels(label_names: Iterable[str]) -> list[str]:
    """Maps Product-* and Area-* labels onto normalized product labels."""
    out = []
    for name in label_names:
        name = (name or "").strip()
        lowered = name.lower()
        for prefix in PRODUCT_LABEL_PREFIXES:
            if lowered.startswith(prefix):
                label = normalize_area_to_product_label(name[len(prefix):])
                if label:
                    out.append(label)
                break
    return out


def derive_product_labels(
    body: str | None,
    label_names: Iterable[str],
    heading: str = DEFAULT_AREA_FIELD,
) -> list[str]:
    """
    Template areas win over labels; never empty.
    Order is preserved and duplicates dropped.
    """
    labels = extract_area_product_labels(body, heading)
    if not labels:
        labels = product_labels_from_issue_labels(label_names)
    if not labels:
        labels = [UNCATEGORIZED_PRODUCT_LABEL]
    return list(dict.fromkeys(labels))


def extract_issue_type(label_names: Iterable[str]) -> str | None:
    """First Issue-* label wins, e.g. Issue-Bug -> "bug"."""
    for name in label_names:
        issue_type = ISSUE_TYPE_LABELS.get((name or "").lower())
        if issue_type:
            return issue_type
    return None
