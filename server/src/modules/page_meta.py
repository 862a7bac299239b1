"""
Page metadata that lives inside the page text itself.

Tags are a first body line of the form ``tags: a, b, c``; the folder is a
bracketed title prefix ``[folder] Title``. Pages have no separate columns for
either, so these helpers are the only place that reads or writes them.
"""

from __future__ import annotations

import re
from typing import Iterable


TAG_RE = re.compile(r"^[a-z0-9_-]{1,32}$")
TAGS_HEADER = "tags:"
FOLDER_RE = re.compile(r"^\s*\[([^\]]*)\]\s*(.*)$", re.DOTALL)


def clean_tag(raw: str) -> str | None:
    tag = str(raw or "").strip().lower()
    if tag.startswith("#"):
        tag = tag[1:].strip()
    return tag if TAG_RE.match(tag) else None


def normalize_tags(values: Iterable[str]) -> list[str]:
    tags: list[str] = []
    seen: set[str] = set()
    for raw in values:
        tag = clean_tag(raw)
        if not tag or tag in seen:
            continue
        seen.add(tag)
        tags.append(tag)
    return tags


def parse_tag_list(raw: str) -> list[str]:
    return normalize_tags(str(raw or "").split(","))


def decode_tags(body: str) -> tuple[list[str], str]:
    """Split a body into (tags, remainder). Bodies without a header come back whole."""
    text = body or ""
    lines = text.split("\n")
    first = lines[0].strip()
    if not first.lower().startswith(TAGS_HEADER):
        return [], text
    tags = parse_tag_list(first[len(TAGS_HEADER):])
    rest = lines[1:]
    while rest and not rest[0].strip():
        rest.pop(0)
    return tags, "\n".join(rest)


def encode_tags(tags: Iterable[str], body: str) -> str:
    clean = normalize_tags(tags)
    body = body or ""
    if not clean:
        return body
    header = f"{TAGS_HEADER} {', '.join(clean)}"
    if not body:
        return header
    return f"{header}\n\n{body}"


def _clean_folder(folder: str) -> str:
    return str(folder or "").strip().strip("/").strip()


def unfold_title(title: str) -> tuple[str, str]:
    """Return (folder, title without the folder prefix); folder is "" when absent."""
    raw = str(title or "")
    match = FOLDER_RE.match(raw)
    if not match:
        return "", raw.strip()
    return _clean_folder(match.group(1)), match.group(2).strip()


def fold_into_title(title: str, folder: str) -> str:
    _, plain = unfold_title(title)
    clean = _clean_folder(folder)
    if not clean:
        return plain
    return f"[{clean}] {plain}"
