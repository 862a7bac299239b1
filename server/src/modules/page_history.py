"""
Version history for pages.

Every content-affecting write goes through ``apply_mutation``, which runs in
one transaction:

    lock page row -> snapshot current state -> apply changes -> bump version
    -> refresh search column -> commit

The snapshot carries the version the page holds *before* the write, so a
page at version N always has snapshots 1..N-1 once its writes complete.
Snapshots are append-only; rollback copies an old snapshot forward instead
of rewinding the counter.
"""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import DateTime, String, insert, literal, select, update
from sqlalchemy.exc import IntegrityError

from server.src.modules.notes_db import (
    BoundedSession,
    Page,
    PageVersion,
    refresh_search_vector,
    utc_now,
)
from server.src.modules.notes_errors import NotFoundError, SlugConflictError

logger = logging.getLogger(__name__)

HISTORY_MIN_LIMIT = 1
HISTORY_MAX_LIMIT = 30
HISTORY_DEFAULT_LIMIT = 10
SNAPSHOT_COLUMNS = ["page_id", "version", "title", "slug", "body", "author_id", "created_at"]
MUTABLE_FIELDS = {"title", "slug", "body"}


def clamp_history_limit(limit: int | None) -> int:
    if limit is None:
        return HISTORY_DEFAULT_LIMIT
    return max(HISTORY_MIN_LIMIT, min(HISTORY_MAX_LIMIT, int(limit)))


async def lock_page(db: BoundedSession, page_id: str) -> None:
    # FOR UPDATE serialises writers on one page (no-op on SQLite, which locks the file)
    await db.execute(select(Page.id).where(Page.id == page_id).with_for_update(), "lock_page")


async def snapshot(db: BoundedSession, page_id: str, author_id: str | None) -> None:
    """Append a PageVersion copied from the page row as it is right now."""
    source = select(
        Page.id,
        Page.version,
        Page.title,
        Page.slug,
        Page.body,
        literal(author_id, String(64)),
        literal(utc_now(), DateTime(timezone=True)),
    ).where(Page.id == page_id)
    result = await db.execute(insert(PageVersion).from_select(SNAPSHOT_COLUMNS, source), "snapshot")
    if not result.rowcount:
        raise NotFoundError("Page not found.")


async def bump_version(db: BoundedSession, page_id: str) -> None:
    """Atomic version + 1 in SQL; never read-modify-write in Python."""
    await db.execute(
        update(Page)
        .where(Page.id == page_id)
        .values(version=Page.version + 1, updated_at=utc_now())
        .execution_options(synchronize_session=False),
        "bump_version",
    )


async def apply_mutation(
    db: BoundedSession,
    page: Page,
    *,
    author_id: str | None,
    **changes: Any,
) -> Page:
    """
    Snapshot `page`, write `changes` (title / slug / body) and bump its version.

    Raises SlugConflictError when the new slug collides with another page in
    the same workspace; the transaction is rolled back in that case.
    """
    unknown = set(changes) - MUTABLE_FIELDS
    if unknown:
        raise ValueError(f"Unsupported page fields: {sorted(unknown)}")

    try:
        await lock_page(db, page.id)
        await snapshot(db, page.id, author_id)
        if changes:
            await db.execute(
                update(Page)
                .where(Page.id == page.id)
                .values(**changes)
                .execution_options(synchronize_session=False),
                "apply_mutation",
            )
        await bump_version(db, page.id)
        await refresh_search_vector(db, page.id)
        await db.commit("apply_mutation")
    except IntegrityError as exc:
        await db.rollback()
        msg = str(getattr(exc, "orig", exc)).lower()
        if "slug" in msg or "ux_page_workspace_slug" in msg:
            raise SlugConflictError(slug=changes.get("slug")) from exc
        raise

    await db.refresh(page)
    logger.debug("page %s now at version %s", page.id, page.version)
    return page


async def find_snapshot(db: BoundedSession, page_id: str, version: int | None = None) -> PageVersion | None:
    stmt = select(PageVersion).where(PageVersion.page_id == page_id)
    if version is not None:
        stmt = stmt.where(PageVersion.version == int(version))
    else:
        stmt = stmt.order_by(PageVersion.version.desc()).limit(1)
    return await db.scalar(stmt, "find_snapshot")


async def rollback_page(
    db: BoundedSession,
    page: Page,
    *,
    target_version: int | None = None,
    author_id: str | None = None,
) -> tuple[Page, PageVersion]:
    """
    Restore title/slug/body from a snapshot (the latest one when no version is given).

    The current state is snapshotted first, so a rollback can itself be
    rolled back, and the version counter keeps moving forward.
    """
    target = await find_snapshot(db, page.id, target_version)
    if target is None:
        if target_version is None:
            raise NotFoundError("This page has no history yet.")
        raise NotFoundError(f"Version {target_version} not found for this page.")

    clash = await db.scalar(
        select(Page.id).where(
            Page.workspace_id == page.workspace_id,
            Page.slug == target.slug,
            Page.id != page.id,
        ),
        "rollback_slug_check",
    )
    if clash:
        raise SlugConflictError(f"Slug {target.slug} now belongs to another page; rename that page first.")

    restored = await apply_mutation(
        db,
        page,
        author_id=author_id,
        title=target.title,
        slug=target.slug,
        body=target.body,
    )
    return restored, target


async def list_history(db: BoundedSession, page_id: str, limit: int | None = None) -> list[PageVersion]:
    stmt = (
        select(PageVersion)
        .where(PageVersion.page_id == page_id)
        .order_by(PageVersion.version.desc())
        .limit(clamp_history_limit(limit))
    )
    return await db.scalars(stmt, "list_history")
