"""
Permission resolution for pages.

Rules are allow-list entries scoped to a workspace (page_id is NULL) or to a
single page, optionally restricted to one channel. Resolution for a
(actor, workspace, page) triple:

1. administrators always pass;
2. when no rule exists for the page scope *or* the workspace-wide scope the
   resource is open;
3. otherwise at least one rule must name a role the actor holds, match the
   actor's channel (or have no channel), and carry the requested flag.

Step 2 looks at both scopes together: a single workspace-wide rule turns every
page in the workspace into deny-unless-allowed, including pages that have no
rule of their own. That coupling is intended and covered by tests.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field

from sqlalchemy import and_, delete, func, or_, select

from server.src.modules.notes_db import BoundedSession, PermissionRule
from server.src.modules.notes_errors import PermissionDeniedError, ValidationError

logger = logging.getLogger(__name__)

PERMISSION_ADMINISTRATOR = 1 << 3
PERMISSION_MANAGE_GUILD = 1 << 5
READ = "read"
WRITE = "write"
MENTION_RE = re.compile(r"^<(?:@&|#)(\d+)>$")


@dataclass(frozen=True)
class Actor:
    user_id: str
    role_ids: tuple[str, ...] = field(default_factory=tuple)
    channel_id: str | None = None
    is_admin: bool = False


def is_admin_bitfield(permissions: str | int | None) -> bool:
    try:
        bits = int(permissions or 0)
    except (TypeError, ValueError):
        return False
    return bool(bits & (PERMISSION_ADMINISTRATOR | PERMISSION_MANAGE_GUILD))


def normalize_snowflake(value: str | None) -> str | None:
    """Accept a raw id or a role/channel mention and return the bare id."""
    raw = str(value or "").strip()
    if not raw:
        return None
    match = MENTION_RE.match(raw)
    if match:
        return match.group(1)
    if not raw.isdigit():
        raise ValidationError(f"Not a valid id: {raw[:40]}")
    return raw


def _scope_filter(workspace_id: str, page_id: str | None):
    if page_id:
        scope = or_(PermissionRule.page_id == page_id, PermissionRule.page_id.is_(None))
    else:
        scope = PermissionRule.page_id.is_(None)
    return and_(PermissionRule.workspace_id == workspace_id, scope)


def rule_matches(rule: PermissionRule, role_ids: set[str], channel_id: str | None, capability: str) -> bool:
    if rule.role_id not in role_ids:
        return False
    if rule.channel_id and rule.channel_id != channel_id:
        return False
    return bool(rule.can_write if capability == WRITE else rule.can_read)


async def _resolve(
    db: BoundedSession,
    actor: Actor | None,
    workspace_id: str,
    page_id: str | None,
    capability: str,
) -> bool:
    if actor is not None and actor.is_admin:
        return True

    scope = _scope_filter(workspace_id, page_id)
    count = await db.scalar(
        select(func.count()).select_from(PermissionRule).where(scope),
        "permission_rule_count",
    )
    if not count:
        return True

    rules = await db.scalars(select(PermissionRule).where(scope), "permission_rules")
    role_ids = set(actor.role_ids or ()) if actor is not None else set()
    channel_id = actor.channel_id if actor is not None else None
    return any(rule_matches(rule, role_ids, channel_id, capability) for rule in rules)


async def can_read(db: BoundedSession, actor: Actor | None, workspace_id: str, page_id: str | None = None) -> bool:
    return await _resolve(db, actor, workspace_id, page_id, READ)


async def can_write(db: BoundedSession, actor: Actor | None, workspace_id: str, page_id: str | None = None) -> bool:
    return await _resolve(db, actor, workspace_id, page_id, WRITE)


async def require_read(db: BoundedSession, actor: Actor, workspace_id: str, page_id: str | None = None) -> None:
    if not await can_read(db, actor, workspace_id, page_id):
        logger.info("read denied: user=%s workspace=%s page=%s", actor.user_id, workspace_id, page_id)
        raise PermissionDeniedError("You do not have read access here.")


async def require_write(db: BoundedSession, actor: Actor, workspace_id: str, page_id: str | None = None) -> None:
    if not await can_write(db, actor, workspace_id, page_id):
        logger.info("write denied: user=%s workspace=%s page=%s", actor.user_id, workspace_id, page_id)
        raise PermissionDeniedError("You do not have write access here.")


async def unreadable_page_ids(db: BoundedSession, actor: Actor | None, workspace_id: str) -> set[str]:
    """
    Ids of pages whose own rules deny the actor read access.

    Listings check workspace-scope read first; this covers the pages locked
    further by page-scoped rules so titles and snippets never leak past them.
    A matching workspace-wide rule grants read on every page.
    """
    if actor is not None and actor.is_admin:
        return set()
    rules = await db.scalars(
        select(PermissionRule).where(PermissionRule.workspace_id == workspace_id),
        "permission_rules_workspace",
    )
    role_ids = set(actor.role_ids or ()) if actor is not None else set()
    channel_id = actor.channel_id if actor is not None else None

    scoped: set[str] = set()
    granted: set[str] = set()
    for rule in rules:
        allowed = rule_matches(rule, role_ids, channel_id, READ)
        if rule.page_id is None:
            if allowed:
                return set()
            continue
        scoped.add(rule.page_id)
        if allowed:
            granted.add(rule.page_id)
    return scoped - granted


def require_admin(actor: Actor) -> None:
    if not actor.is_admin:
        raise PermissionDeniedError("Only server administrators can manage permissions.")


def _exact_rule_filter(workspace_id: str, page_id: str | None, role_id: str, channel_id: str | None):
    return and_(
        PermissionRule.workspace_id == workspace_id,
        PermissionRule.page_id.is_(None) if page_id is None else PermissionRule.page_id == page_id,
        PermissionRule.role_id == role_id,
        PermissionRule.channel_id.is_(None) if channel_id is None else PermissionRule.channel_id == channel_id,
    )


async def set_rule(
    db: BoundedSession,
    *,
    workspace_id: str,
    role_id: str,
    allow_read: bool,
    allow_write: bool,
    page_id: str | None = None,
    channel_id: str | None = None,
) -> PermissionRule:
    """Create the rule for (scope, role, channel) or overwrite its flags."""
    existing = await db.scalar(
        select(PermissionRule).where(_exact_rule_filter(workspace_id, page_id, role_id, channel_id)),
        "permission_rule_lookup",
    )
    if existing is None:
        existing = PermissionRule(
            workspace_id=workspace_id,
            page_id=page_id,
            role_id=role_id,
            channel_id=channel_id,
            can_read=bool(allow_read),
            can_write=bool(allow_write),
        )
        db.add(existing)
    else:
        existing.can_read = bool(allow_read)
        existing.can_write = bool(allow_write)
    await db.commit("permission_rule_set")
    return existing


async def list_rules(db: BoundedSession, workspace_id: str, page_id: str | None = None) -> list[PermissionRule]:
    stmt = select(PermissionRule).where(PermissionRule.workspace_id == workspace_id)
    if page_id:
        stmt = stmt.where(PermissionRule.page_id == page_id)
    stmt = stmt.order_by(PermissionRule.page_id.is_not(None), PermissionRule.role_id, PermissionRule.created_at)
    return await db.scalars(stmt, "permission_rule_list")


async def clear_rules(db: BoundedSession, workspace_id: str, page_id: str | None = None) -> int:
    """Delete every rule of one scope: the page's rules, or the workspace-wide ones."""
    stmt = delete(PermissionRule).where(PermissionRule.workspace_id == workspace_id)
    if page_id:
        stmt = stmt.where(PermissionRule.page_id == page_id)
    else:
        stmt = stmt.where(PermissionRule.page_id.is_(None))
    result = await db.execute(stmt, "permission_rule_clear")
    await db.commit("permission_rule_clear")
    return int(result.rowcount or 0)


async def remove_rule(
    db: BoundedSession,
    *,
    workspace_id: str,
    role_id: str,
    page_id: str | None = None,
    channel_id: str | None = None,
) -> bool:
    result = await db.execute(
        delete(PermissionRule).where(_exact_rule_filter(workspace_id, page_id, role_id, channel_id)),
        "permission_rule_remove",
    )
    await db.commit("permission_rule_remove")
    return bool(result.rowcount)
