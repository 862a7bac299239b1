import re

import pytest

from server.src.modules.slug_allocator import (
    FALLBACK_SLUG,
    MAX_SLUG_ATTEMPTS,
    MAX_SLUG_LENGTH,
    SLUG_RE,
    allocate_slug,
    base_slug,
    looks_like_slug,
    slug_candidates,
    slugify,
)

from tests.conftest import OTHER_WORKSPACE, WORKSPACE, notes_repo


def test_slugify_normalizes_titles():
    assert slugify("My Notes") == "my-notes"
    assert slugify("  Build / Guides -- v2!! ") == "build-guides-v2"
    assert slugify("Crème brûlée") == "creme-brulee"
    assert slugify("!!!") == ""
    assert base_slug("!!!") == FALLBACK_SLUG


def test_letters_without_ascii_form_fall_back():
    assert slugify("日本語") == ""
    assert base_slug("日本語") == FALLBACK_SLUG
    assert slugify("日本語 Notes 2") == "notes-2"


def test_long_titles_are_truncated_without_trailing_hyphen():
    slug = slugify("word " * 40)
    assert len(slug) <= MAX_SLUG_LENGTH
    assert SLUG_RE.match(slug)


def test_looks_like_slug():
    assert looks_like_slug("my-notes")
    assert not looks_like_slug("My Notes")
    assert not looks_like_slug("my--notes")
    assert not looks_like_slug("-notes")


def test_candidates_are_bounded():
    candidates = list(slug_candidates("notes"))
    assert candidates[:3] == ["notes", "notes-2", "notes-3"]
    assert len(candidates) == MAX_SLUG_ATTEMPTS


@pytest.mark.asyncio
async def test_same_title_twice_yields_distinct_slugs():
    async with notes_repo() as repo:
        first = await repo.create_page(WORKSPACE, title="My Notes")
        second = await repo.create_page(WORKSPACE, title="My Notes")
        assert first.slug == "my-notes"
        assert second.slug == "my-notes-2"


@pytest.mark.asyncio
async def test_slugs_are_scoped_per_workspace():
    async with notes_repo() as repo:
        await repo.ensure_workspace(OTHER_WORKSPACE)
        await repo.create_page(WORKSPACE, title="Shared")
        other = await repo.create_page(OTHER_WORKSPACE, title="Shared")
        assert other.slug == "shared"


@pytest.mark.asyncio
async def test_exclude_and_skip():
    async with notes_repo() as repo:
        page = await repo.create_page(WORKSPACE, title="Alpha")
        assert await allocate_slug(repo.db, WORKSPACE, "Alpha", exclude_page_id=page.id) == "alpha"
        assert await allocate_slug(repo.db, WORKSPACE, "Beta", skip={"beta"}) == "beta-2"


@pytest.mark.asyncio
async def test_exhausted_candidates_fall_back_to_random_suffix():
    async with notes_repo() as repo:
        for slug in slug_candidates("busy"):
            await repo.create_page(WORKSPACE, title="Busy", fixed_slug=slug)
        slug = await allocate_slug(repo.db, WORKSPACE, "Busy")
        assert re.match(r"^busy-[0-9a-f]{6}$", slug)
        page = await repo.create_page(WORKSPACE, title="Busy")
        assert page.slug.startswith("busy-")
        assert SLUG_RE.match(page.slug)
