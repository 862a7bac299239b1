from __future__ import annotations

import logging
import math
from collections import Counter
from datetime import date
from typing import Any, Collection

from sqlalchemy import delete, func, literal, or_, select
from sqlalchemy.exc import IntegrityError

from server.src.modules.notes_db import (
    BoundedSession,
    Page,
    PageVersion,
    PermissionRule,
    Workspace,
    refresh_search_vector,
)
from server.src.modules.notes_errors import NotFoundError, SlugConflictError, ValidationError
from server.src.modules.page_history import apply_mutation, lock_page, snapshot
from server.src.modules.page_meta import decode_tags, fold_into_title, unfold_title
from server.src.modules.slug_allocator import allocate_slug, looks_like_slug, slugify


logger = logging.getLogger(__name__)

PAGE_LIST_SIZE = 10
AUTOCOMPLETE_LIMIT = 25
SEARCH_LIMIT = 10
BACKLINK_LIMIT = 25
MAX_TITLE_LENGTH = 200
MAX_INSERT_ATTEMPTS = 5
TEMPLATE_FOLDER = "templates"
DAILY_FOLDER = "daily"


def clean_title(raw: str | None) -> str:
    title = " ".join(str(raw or "").split())
    if not title:
        raise ValidationError("Title is required.")
    if len(title) > MAX_TITLE_LENGTH:
        raise ValidationError(f"Title is too long (max {MAX_TITLE_LENGTH} characters).")
    return title


def template_slug(name: str) -> str:
    base = slugify(name)
    if not base:
        raise ValidationError("Template name needs at least one letter or digit.")
    return f"template-{base}"[:60].strip("-")


def daily_slug(day: date) -> str:
    return f"daily-{day.isoformat()}"


def _visible(where: list, hidden: Collection[str]) -> list:
    if hidden:
        where.append(Page.id.not_in(sorted(hidden)))
    return where


def _text_filter(search: str):
    text = (search or "").strip()
    if not text:
        return None
    clauses = [
        Page.title.icontains(text, autoescape=True),
        Page.body.icontains(text, autoescape=True),
    ]
    slug_part = slugify(text)
    if slug_part:
        clauses.append(Page.slug.contains(slug_part, autoescape=True))
    return or_(*clauses)


class NotesRepo:
    """Page storage for one workspace-scoped request; every call is time-bounded."""

    def __init__(self, db: BoundedSession):
        self.db = db

    async def ensure_workspace(self, workspace_id: str) -> None:
        found = await self.db.scalar(select(Workspace.id).where(Workspace.id == workspace_id), "workspace_lookup")
        if found:
            return
        self.db.add(Workspace(id=workspace_id))
        try:
            await self.db.commit("workspace_create")
            logger.info("workspace %s registered", workspace_id)
        except IntegrityError:
            # created concurrently by another event
            await self.db.rollback()

    async def get_page_by_slug(self, workspace_id: str, slug: str) -> Page | None:
        return await self.db.scalar(
            select(Page).where(Page.workspace_id == workspace_id, Page.slug == slug),
            "page_by_slug",
        )

    async def find_page(self, workspace_id: str, query: str | None) -> Page | None:
        """Slug first (the query itself when it looks like one), then exact title."""
        text = (query or "").strip()
        if not text:
            return None
        slug = text.lower() if looks_like_slug(text) else slugify(text)
        if slug:
            page = await self.get_page_by_slug(workspace_id, slug)
            if page is not None:
                return page
        return await self.db.scalar(
            select(Page)
            .where(Page.workspace_id == workspace_id, func.lower(Page.title) == text.lower())
            .order_by(Page.updated_at.desc())
            .limit(1),
            "page_by_title",
        )

    async def require_page(self, workspace_id: str, query: str | None) -> Page:
        page = await self.find_page(workspace_id, query)
        if page is None:
            raise NotFoundError("Page not found.")
        return page

    async def page_labels(self, page_ids: list[str]) -> dict[str, str]:
        ids = sorted({pid for pid in page_ids if pid})
        if not ids:
            return {}
        result = await self.db.execute(select(Page.id, Page.slug).where(Page.id.in_(ids)), "page_labels")
        return {row[0]: row[1] for row in result.all()}

    async def create_page(
        self,
        workspace_id: str,
        *,
        title: str,
        body: str = "",
        slug_source: str | None = None,
        fixed_slug: str | None = None,
    ) -> Page:
        """
        Insert a page at version 1.

        The slug is allocated from `slug_source` (default: the title without
        its folder prefix). A uniqueness violation from a concurrent insert is
        retried with the next free candidate; `fixed_slug` is never retried.
        """
        if slug_source is None:
            _, slug_source = unfold_title(title)
        skip: set[str] = set()
        for _attempt in range(MAX_INSERT_ATTEMPTS):
            slug = fixed_slug or await allocate_slug(self.db, workspace_id, slug_source, skip=skip)
            page = Page(workspace_id=workspace_id, title=title, slug=slug, body=body or "", version=1)
            self.db.add(page)
            try:
                await self.db.flush("create_page")
            except IntegrityError:
                await self.db.rollback()
                if fixed_slug:
                    raise SlugConflictError(slug=fixed_slug)
                logger.info("slug %s taken concurrently in %s, trying next candidate", slug, workspace_id)
                skip.add(slug)
                continue
            await refresh_search_vector(self.db, page.id)
            await self.db.commit("create_page")
            await self.db.refresh(page)
            return page
        raise SlugConflictError("Could not find a free slug, please try again.")

    async def update_page(self, page: Page, *, author_id: str | None, **changes: Any) -> Page:
        """Apply only the fields that actually change; unchanged writes leave no snapshot."""
        effective = {key: value for key, value in changes.items() if getattr(page, key) != value}
        if not effective:
            return page
        return await apply_mutation(self.db, page, author_id=author_id, **effective)

    async def rename_page(self, page: Page, new_title: str, *, keep_slug: bool, author_id: str | None) -> Page:
        current_folder, _ = unfold_title(page.title)
        new_folder, new_plain = unfold_title(new_title)
        title = fold_into_title(new_plain, new_folder or current_folder)
        if keep_slug:
            return await self.update_page(page, author_id=author_id, title=title)

        skip: set[str] = set()
        for _attempt in range(MAX_INSERT_ATTEMPTS):
            slug = await allocate_slug(self.db, page.workspace_id, new_plain, exclude_page_id=page.id, skip=skip)
            try:
                return await self.update_page(page, author_id=author_id, title=title, slug=slug)
            except SlugConflictError:
                skip.add(slug)
                await self.db.refresh(page)
        raise SlugConflictError("Could not find a free slug, please try again.")

    async def delete_page(self, page: Page, *, author_id: str | None) -> int:
        """Snapshot, then remove the page with its history and page-scoped rules."""
        await lock_page(self.db, page.id)
        await snapshot(self.db, page.id, author_id)
        await self.db.execute(delete(PageVersion).where(PageVersion.page_id == page.id), "delete_page_versions")
        rules = await self.db.execute(delete(PermissionRule).where(PermissionRule.page_id == page.id), "delete_page_rules")
        await self.db.execute(delete(Page).where(Page.id == page.id), "delete_page")
        await self.db.commit("delete_page")
        return int(rules.rowcount or 0)

    async def list_pages(
        self,
        workspace_id: str,
        search: str = "",
        page_num: int = 1,
        *,
        hidden: Collection[str] = (),
    ) -> tuple[list[Page], int, int, int]:
        """Return (rows, total, current page, total pages), newest first, 10 per page."""
        where = _visible([Page.workspace_id == workspace_id], hidden)
        text_filter = _text_filter(search)
        if text_filter is not None:
            where.append(text_filter)

        total = int(await self.db.scalar(select(func.count()).select_from(Page).where(*where), "page_list_count") or 0)
        total_pages = max(1, math.ceil(total / PAGE_LIST_SIZE))
        current = max(1, min(int(page_num or 1), total_pages))
        rows = await self.db.scalars(
            select(Page)
            .where(*where)
            .order_by(Page.updated_at.desc(), Page.title)
            .offset((current - 1) * PAGE_LIST_SIZE)
            .limit(PAGE_LIST_SIZE),
            "page_list",
        )
        return rows, total, current, total_pages

    async def autocomplete(self, workspace_id: str, query: str = "", *, hidden: Collection[str] = ()) -> list[Page]:
        where = _visible([Page.workspace_id == workspace_id], hidden)
        text_filter = _text_filter(query)
        if text_filter is not None:
            where.append(text_filter)
        return await self.db.scalars(
            select(Page).where(*where).order_by(Page.updated_at.desc()).limit(AUTOCOMPLETE_LIMIT),
            "autocomplete",
        )

    async def search_pages(
        self,
        workspace_id: str,
        query: str,
        limit: int = SEARCH_LIMIT,
        *,
        hidden: Collection[str] = (),
    ) -> list[tuple[Page, float]]:
        """Full-text search: tsvector ranking on PostgreSQL, all-terms match elsewhere."""
        text = (query or "").strip()
        if not text:
            raise ValidationError("Search query is required.")
        scope = _visible([Page.workspace_id == workspace_id], hidden)
        if self.db.is_postgres:
            tsquery = func.plainto_tsquery("simple", text)
            rank = func.ts_rank(Page.search_vector, tsquery)
            stmt = (
                select(Page, rank.label("rank"))
                .where(*scope, Page.search_vector.op("@@")(tsquery))
                .order_by(rank.desc(), Page.updated_at.desc())
                .limit(limit)
            )
        else:
            terms = [term for term in text.lower().split() if term]
            stmt = (
                select(Page, literal(0.0).label("rank"))
                .where(
                    *scope,
                    *[Page.search_vector.contains(term, autoescape=True) for term in terms],
                )
                .order_by(Page.updated_at.desc())
                .limit(limit)
            )
        result = await self.db.execute(stmt, "search_pages")
        return [(row[0], float(row[1] or 0.0)) for row in result.all()]

    async def list_tags(self, workspace_id: str, search: str = "", *, hidden: Collection[str] = ()) -> list[tuple[str, int]]:
        where = _visible([Page.workspace_id == workspace_id, Page.body.icontains("tags:")], hidden)
        bodies = await self.db.scalars(
            select(Page.body).where(*where),
            "tag_scan",
        )
        counts: Counter[str] = Counter()
        for body in bodies:
            tags, _ = decode_tags(body)
            counts.update(tags)
        needle = (search or "").strip().lower().lstrip("#")
        rows = [(tag, n) for tag, n in counts.items() if not needle or needle in tag]
        rows.sort(key=lambda item: (-item[1], item[0]))
        return rows

    async def backlinks(self, page: Page, *, hidden: Collection[str] = ()) -> list[Page]:
        """Pages whose body links here with [[slug]] or [[title]]."""
        _, plain = unfold_title(page.title)
        needles = {f"[[{page.slug}]]", f"[[{page.title}]]"}
        if plain:
            needles.add(f"[[{plain}]]")
        return await self.db.scalars(
            select(Page)
            .where(
                *_visible([Page.workspace_id == page.workspace_id, Page.id != page.id], hidden),
                or_(*[Page.body.icontains(needle, autoescape=True) for needle in sorted(needles)]),
            )
            .order_by(Page.updated_at.desc())
            .limit(BACKLINK_LIMIT),
            "backlinks",
        )

    async def get_template(self, workspace_id: str, name: str) -> Page | None:
        page = await self.get_page_by_slug(workspace_id, template_slug(name))
        if page is None:
            return None
        folder, _ = unfold_title(page.title)
        return page if folder == TEMPLATE_FOLDER else None

    async def save_template(self, workspace_id: str, name: str, content: str, *, author_id: str | None) -> tuple[Page, bool]:
        """Create or overwrite a template page. Returns (page, created)."""
        plain = clean_title(name)
        slug = template_slug(plain)
        existing = await self.get_page_by_slug(workspace_id, slug)
        if existing is not None:
            folder, _ = unfold_title(existing.title)
            if folder != TEMPLATE_FOLDER:
                raise ValidationError(f"Slug {slug} is used by a regular page.")
            return await self.update_page(existing, author_id=author_id, body=content), False
        page = await self.create_page(
            workspace_id,
            title=fold_into_title(plain, TEMPLATE_FOLDER),
            body=content,
            fixed_slug=slug,
        )
        return page, True

    async def open_or_create_daily(self, workspace_id: str, day: date, *, create: bool) -> tuple[Page | None, bool]:
        """Return (page, created). With create=False a missing note comes back as (None, False)."""
        slug = daily_slug(day)
        existing = await self.get_page_by_slug(workspace_id, slug)
        if existing is not None or not create:
            return existing, False
        page = await self.create_page(
            workspace_id,
            title=fold_into_title(f"Daily {day.isoformat()}", DAILY_FOLDER),
            body=f"# {day.isoformat()}\n",
            fixed_slug=slug,
        )
        return page, True
