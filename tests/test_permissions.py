import pytest

from server.src.modules.notes_errors import PermissionDeniedError, ValidationError
from server.src.modules.notes_permissions import (
    can_read,
    can_write,
    clear_rules,
    is_admin_bitfield,
    list_rules,
    normalize_snowflake,
    remove_rule,
    require_write,
    set_rule,
    unreadable_page_ids,
)

from tests.conftest import OTHER_WORKSPACE, WORKSPACE, notes_repo
from tests.helpers import member

ROLE = "42"
OTHER_ROLE = "43"


@pytest.mark.asyncio
async def test_no_rules_means_open_access():
    async with notes_repo() as repo:
        page = await repo.create_page(WORKSPACE, title="Open")
        nobody = member(roles=())
        assert await can_read(repo.db, nobody, WORKSPACE, page.id)
        assert await can_write(repo.db, nobody, WORKSPACE, page.id)
        assert await can_write(repo.db, None, WORKSPACE)


@pytest.mark.asyncio
async def test_workspace_rule_locks_down_every_page():
    async with notes_repo() as repo:
        page = await repo.create_page(WORKSPACE, title="No Page Rules")
        await set_rule(repo.db, workspace_id=WORKSPACE, role_id=ROLE, allow_read=True, allow_write=False)

        reader = member(roles=(ROLE,))
        outsider = member(roles=(OTHER_ROLE,))
        assert await can_read(repo.db, reader, WORKSPACE, page.id)
        assert not await can_write(repo.db, reader, WORKSPACE, page.id)
        # the page has no rule of its own, yet the workspace rule denies outsiders
        assert not await can_read(repo.db, outsider, WORKSPACE, page.id)
        assert not await can_write(repo.db, outsider, WORKSPACE, page.id)
        assert not await can_read(repo.db, outsider, WORKSPACE)


@pytest.mark.asyncio
async def test_admin_always_passes():
    async with notes_repo() as repo:
        await set_rule(repo.db, workspace_id=WORKSPACE, role_id=ROLE, allow_read=False, allow_write=False)
        admin = member(roles=(), admin=True)
        assert await can_read(repo.db, admin, WORKSPACE)
        assert await can_write(repo.db, admin, WORKSPACE)


@pytest.mark.asyncio
async def test_page_rule_only_locks_that_page():
    async with notes_repo() as repo:
        locked = await repo.create_page(WORKSPACE, title="Locked")
        free = await repo.create_page(WORKSPACE, title="Free")
        await set_rule(repo.db, workspace_id=WORKSPACE, role_id=ROLE, allow_read=True, allow_write=True, page_id=locked.id)

        outsider = member(roles=(OTHER_ROLE,))
        assert not await can_read(repo.db, outsider, WORKSPACE, locked.id)
        assert await can_read(repo.db, outsider, WORKSPACE, free.id)
        assert await can_write(repo.db, member(roles=(ROLE,)), WORKSPACE, locked.id)


@pytest.mark.asyncio
async def test_unreadable_pages_for_listings():
    async with notes_repo() as repo:
        locked = await repo.create_page(WORKSPACE, title="Locked")
        await repo.create_page(WORKSPACE, title="Free")
        await set_rule(repo.db, workspace_id=WORKSPACE, role_id=ROLE, allow_read=True, allow_write=False, page_id=locked.id)

        assert await unreadable_page_ids(repo.db, member(roles=(OTHER_ROLE,)), WORKSPACE) == {locked.id}
        assert await unreadable_page_ids(repo.db, member(roles=(ROLE,)), WORKSPACE) == set()
        assert await unreadable_page_ids(repo.db, member(roles=(), admin=True), WORKSPACE) == set()

        # a matching workspace-wide rule opens every page
        await set_rule(repo.db, workspace_id=WORKSPACE, role_id=OTHER_ROLE, allow_read=True, allow_write=False)
        assert await unreadable_page_ids(repo.db, member(roles=(OTHER_ROLE,)), WORKSPACE) == set()


@pytest.mark.asyncio
async def test_any_matching_rule_grants():
    async with notes_repo() as repo:
        page = await repo.create_page(WORKSPACE, title="Mixed")
        await set_rule(repo.db, workspace_id=WORKSPACE, role_id=ROLE, allow_read=True, allow_write=False)
        await set_rule(repo.db, workspace_id=WORKSPACE, role_id=OTHER_ROLE, allow_read=False, allow_write=True, page_id=page.id)

        both = member(roles=(ROLE, OTHER_ROLE))
        assert await can_read(repo.db, both, WORKSPACE, page.id)
        assert await can_write(repo.db, both, WORKSPACE, page.id)


@pytest.mark.asyncio
async def test_channel_restriction():
    async with notes_repo() as repo:
        await set_rule(repo.db, workspace_id=WORKSPACE, role_id=ROLE, allow_read=True, allow_write=True, channel_id="700")
        assert await can_write(repo.db, member(roles=(ROLE,), channel_id="700"), WORKSPACE)
        assert not await can_write(repo.db, member(roles=(ROLE,), channel_id="701"), WORKSPACE)
        with pytest.raises(PermissionDeniedError):
            await require_write(repo.db, member(roles=(ROLE,), channel_id=None), WORKSPACE)


@pytest.mark.asyncio
async def test_rules_do_not_leak_between_workspaces():
    async with notes_repo() as repo:
        await repo.ensure_workspace(OTHER_WORKSPACE)
        await set_rule(repo.db, workspace_id=OTHER_WORKSPACE, role_id=ROLE, allow_read=False, allow_write=False)
        assert await can_write(repo.db, member(), WORKSPACE)


@pytest.mark.asyncio
async def test_set_rule_upserts_per_scope_role_and_channel():
    async with notes_repo() as repo:
        await set_rule(repo.db, workspace_id=WORKSPACE, role_id=ROLE, allow_read=True, allow_write=False)
        await set_rule(repo.db, workspace_id=WORKSPACE, role_id=ROLE, allow_read=True, allow_write=True)
        await set_rule(repo.db, workspace_id=WORKSPACE, role_id=ROLE, allow_read=True, allow_write=False, channel_id="700")
        rules = await list_rules(repo.db, WORKSPACE)
        assert len(rules) == 2
        unrestricted = [rule for rule in rules if rule.channel_id is None][0]
        assert unrestricted.can_write is True


@pytest.mark.asyncio
async def test_clear_and_remove_rules():
    async with notes_repo() as repo:
        page = await repo.create_page(WORKSPACE, title="Scoped")
        await set_rule(repo.db, workspace_id=WORKSPACE, role_id=ROLE, allow_read=True, allow_write=True)
        await set_rule(repo.db, workspace_id=WORKSPACE, role_id=ROLE, allow_read=True, allow_write=True, page_id=page.id)
        await set_rule(repo.db, workspace_id=WORKSPACE, role_id=OTHER_ROLE, allow_read=True, allow_write=True, page_id=page.id)

        assert await clear_rules(repo.db, WORKSPACE, page.id) == 2
        assert len(await list_rules(repo.db, WORKSPACE)) == 1
        assert await remove_rule(repo.db, workspace_id=WORKSPACE, role_id=ROLE)
        assert not await remove_rule(repo.db, workspace_id=WORKSPACE, role_id=ROLE)
        assert await list_rules(repo.db, WORKSPACE) == []


def test_admin_bitfield():
    assert is_admin_bitfield("8")
    assert is_admin_bitfield(32)
    assert is_admin_bitfield(str(1 << 3 | 1 << 10))
    assert not is_admin_bitfield("0")
    assert not is_admin_bitfield("nope")
    assert not is_admin_bitfield(None)


def test_normalize_snowflake():
    assert normalize_snowflake("<@&123>") == "123"
    assert normalize_snowflake("<#456>") == "456"
    assert normalize_snowflake(" 789 ") == "789"
    assert normalize_snowflake("") is None
    with pytest.raises(ValidationError):
        normalize_snowflake("admins")
