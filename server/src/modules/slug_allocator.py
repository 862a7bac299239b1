from __future__ import annotations

import re
import secrets
import unicodedata
from typing import Iterable

from sqlalchemy import select

from server.src.modules.notes_db import BoundedSession, Page


SLUG_RE = re.compile(r"^[a-z0-9]+(?:-[a-z0-9]+)*$")
MAX_SLUG_LENGTH = 60
MAX_SLUG_ATTEMPTS = 50
FALLBACK_SLUG = "page"


def slugify(title: str) -> str:
    """Lower-case, hyphen-separated ASCII form of a title; empty when nothing survives."""
    raw = unicodedata.normalize("NFKD", (title or "").strip().lower())
    raw = raw.encode("ascii", "ignore").decode("ascii")
    slug = re.sub(r"[^a-z0-9]+", "-", raw).strip("-")
    return slug[:MAX_SLUG_LENGTH].strip("-")


def looks_like_slug(value: str) -> bool:
    return bool(SLUG_RE.match(value or ""))


def base_slug(title: str) -> str:
    return slugify(title) or FALLBACK_SLUG


def _with_suffix(base: str, suffix: str) -> str:
    head = base[: MAX_SLUG_LENGTH - len(suffix)].strip("-") or FALLBACK_SLUG
    return f"{head}{suffix}"


def slug_candidates(base: str) -> Iterable[str]:
    yield base
    for n in range(2, MAX_SLUG_ATTEMPTS + 1):
        yield _with_suffix(base, f"-{n}")


async def allocate_slug(
    db: BoundedSession,
    workspace_id: str,
    title: str,
    *,
    exclude_page_id: str | None = None,
    skip: Iterable[str] = (),
) -> str:
    """
    Pick a slug for `title` that no other page in the workspace uses.

    Probes base, base-2, ... base-50 against one read of the existing slugs.
    When all of them are taken a random suffix is appended, so the call
    always terminates. The unique constraint on (workspace_id, slug) is still
    the real guard: a concurrent insert of the same candidate fails there and
    the caller retries with that candidate in `skip`.
    """
    base = base_slug(title)
    prefix = base[: MAX_SLUG_LENGTH - 4].strip("-") or base
    stmt = select(Page.slug).where(
        Page.workspace_id == workspace_id,
        Page.slug.like(f"{prefix}%"),
    )
    if exclude_page_id:
        stmt = stmt.where(Page.id != exclude_page_id)
    taken = set(await db.scalars(stmt, "allocate_slug"))
    taken.update(skip)

    for candidate in slug_candidates(base):
        if candidate not in taken:
            return candidate
    return _with_suffix(base, f"-{secrets.token_hex(3)}")
