"""
Turns gateway events into replies.

Each event gets its own storage session from the NotesContext; the dispatcher
checks permissions before touching a page, routes every write through the
repository (and therefore through the version history), and never lets an
exception escape: notes errors become their user message, anything else is
logged and answered with a generic error.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import date
from typing import Awaitable, Callable

from server.src.modules.command_catalog import AUTOCOMPLETE_COMMANDS, help_text
from server.src.modules.gateway_events import (
    AutocompleteEvent,
    ButtonEvent,
    Choice,
    CommandEvent,
    ModalSubmitEvent,
    Reply,
)
from server.src.modules.interaction_tokens import TokenKind, decode_token
from server.src.modules.logging_helpers import write_audit
from server.src.modules.notes_db import BoundedSession, NotesContext, Page, utc_now
from server.src.modules.notes_errors import InvalidTokenError, NotesError, NotFoundError, SlugConflictError, ValidationError
from server.src.modules.notes_permissions import (
    Actor,
    can_read,
    clear_rules,
    list_rules,
    normalize_snowflake,
    remove_rule,
    require_admin,
    require_read,
    require_write,
    set_rule,
    unreadable_page_ids,
)
from server.src.modules.notes_render import (
    MODAL_BODY_LIMIT,
    describe_rule,
    message,
    render_backlinks,
    render_delete_prompt,
    render_edit_modal,
    render_export,
    render_history,
    render_page_list,
    render_page_open,
    render_rules,
    render_search,
    render_tags,
)
from server.src.modules.notes_repo import NotesRepo, clean_title
from server.src.modules.page_history import list_history, rollback_page
from server.src.modules.page_meta import decode_tags, encode_tags, fold_into_title, normalize_tags, parse_tag_list, unfold_title

logger = logging.getLogger(__name__)

GENERIC_ERROR = "Command error."
NO_SERVER = "This command only works inside a server."
UNKNOWN_COMMAND = "Unknown command."
DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
CHOICE_NAME_LIMIT = 100


@dataclass
class CommandCall:
    event: CommandEvent
    actor: Actor
    workspace_id: str
    db: BoundedSession
    repo: NotesRepo

    def text(self, name: str, *, required: bool = False) -> str:
        value = self.event.options.get(name)
        text = "" if value is None else str(value).strip()
        if required and not text:
            raise ValidationError(f"{name} is required.")
        return text

    def raw_text(self, name: str) -> str:
        value = self.event.options.get(name)
        return "" if value is None else str(value)

    def integer(self, name: str) -> int | None:
        value = self.event.options.get(name)
        if value is None or value == "":
            return None
        try:
            return int(value)
        except (TypeError, ValueError):
            raise ValidationError(f"{name} must be a number.")

    def flag(self, name: str, default: bool = False) -> bool:
        value = self.event.options.get(name)
        if value is None:
            return default
        if isinstance(value, str):
            return value.strip().lower() in ("1", "true", "yes", "on")
        return bool(value)


CommandHandler = Callable[[CommandCall], Awaitable[Reply]]
COMMAND_HANDLERS: dict[str, CommandHandler] = {}


def command(name: str):
    def register(fn: CommandHandler) -> CommandHandler:
        COMMAND_HANDLERS[name] = fn
        return fn
    return register


def _page_state(page: Page) -> dict:
    return {"title": page.title, "slug": page.slug, "version": page.version}


def _audit(actor: Actor, action: str, workspace_id: str, page: Page | None = None, before: dict | None = None, **extra):
    write_audit(
        action,
        actor.user_id,
        workspace_id,
        page_id=page.id if page is not None else None,
        before=before,
        after=_page_state(page) if page is not None else None,
        **extra,
    )


async def _readable_page(call: CommandCall) -> Page:
    page = await call.repo.require_page(call.workspace_id, call.text("query", required=True))
    await require_read(call.db, call.actor, call.workspace_id, page.id)
    return page


async def _writable_page(call: CommandCall) -> Page:
    page = await call.repo.require_page(call.workspace_id, call.text("query", required=True))
    await require_write(call.db, call.actor, call.workspace_id, page.id)
    return page


def parse_day(raw: str) -> date:
    text = (raw or "").strip()
    if not text:
        return utc_now().date()
    if not DATE_RE.match(text):
        raise ValidationError("Date must look like YYYY-MM-DD.")
    try:
        return date.fromisoformat(text)
    except ValueError:
        raise ValidationError(f"Not a real date: {text}")


def fill_template(content: str, *, title: str, day: date) -> str:
    return (content or "").replace("{{title}}", title).replace("{{date}}", day.isoformat())


@command("help")
async def cmd_help(call: CommandCall) -> Reply:
    return message(help_text())


@command("page-create")
async def cmd_page_create(call: CommandCall) -> Reply:
    title = clean_title(call.text("title", required=True))
    await require_write(call.db, call.actor, call.workspace_id)
    page = await call.repo.create_page(call.workspace_id, title=title, body=call.raw_text("content"))
    _audit(call.actor, "page_create", call.workspace_id, page)
    return render_page_open(page)


@command("page-open")
async def cmd_page_open(call: CommandCall) -> Reply:
    return render_page_open(await _readable_page(call))


@command("page-list")
async def cmd_page_list(call: CommandCall) -> Reply:
    search = call.text("search")
    return await _page_list(call.db, call.repo, call.actor, call.workspace_id, search, 1)


async def _hidden_pages(db: BoundedSession, actor: Actor, workspace_id: str) -> set[str]:
    await require_read(db, actor, workspace_id)
    return await unreadable_page_ids(db, actor, workspace_id)


async def _page_list(db: BoundedSession, repo: NotesRepo, actor: Actor, workspace_id: str, search: str, page_num: int) -> Reply:
    hidden = await _hidden_pages(db, actor, workspace_id)
    rows, total, current, total_pages = await repo.list_pages(workspace_id, search, page_num, hidden=hidden)
    return render_page_list(workspace_id, rows, search=search, total=total, current=current, total_pages=total_pages)


@command("page-rename")
async def cmd_page_rename(call: CommandCall) -> Reply:
    page = await _writable_page(call)
    new_title = clean_title(call.text("title", required=True))
    before = _page_state(page)
    page = await call.repo.rename_page(page, new_title, keep_slug=call.flag("keep_slug"), author_id=call.actor.user_id)
    _audit(call.actor, "page_rename", call.workspace_id, page, before)
    return render_page_open(page)


@command("page-move")
async def cmd_page_move(call: CommandCall) -> Reply:
    page = await _writable_page(call)
    folder = call.text("folder")
    new_title = clean_title(fold_into_title(page.title, folder))
    before = _page_state(page)
    page = await call.repo.update_page(page, author_id=call.actor.user_id, title=new_title)
    _audit(call.actor, "page_move", call.workspace_id, page, before)
    folder_now, _ = unfold_title(page.title)
    where = f"folder {folder_now}" if folder_now else "the top level"
    return message(f"Moved {page.title} (slug: {page.slug}) to {where}.")


def _tag_reply(page: Page, tags: list[str]) -> Reply:
    return message(f"Tags on {page.title}: {', '.join(tags) if tags else '(none)'}")


@command("tag-add")
async def cmd_tag_add(call: CommandCall) -> Reply:
    page = await _writable_page(call)
    wanted = parse_tag_list(call.text("tags", required=True))
    if not wanted:
        raise ValidationError("No valid tags given.")
    current, rest = decode_tags(page.body)
    merged = normalize_tags([*current, *wanted])
    before = _page_state(page)
    page = await call.repo.update_page(page, author_id=call.actor.user_id, body=encode_tags(merged, rest))
    _audit(call.actor, "tag_add", call.workspace_id, page, before, tags=wanted)
    return _tag_reply(page, merged)


@command("tag-remove")
async def cmd_tag_remove(call: CommandCall) -> Reply:
    page = await _writable_page(call)
    unwanted = set(parse_tag_list(call.text("tags", required=True)))
    if not unwanted:
        raise ValidationError("No valid tags given.")
    current, rest = decode_tags(page.body)
    remaining = [tag for tag in current if tag not in unwanted]
    before = _page_state(page)
    page = await call.repo.update_page(page, author_id=call.actor.user_id, body=encode_tags(remaining, rest))
    _audit(call.actor, "tag_remove", call.workspace_id, page, before, tags=sorted(unwanted))
    return _tag_reply(page, remaining)


@command("tag-list")
async def cmd_tag_list(call: CommandCall) -> Reply:
    hidden = await _hidden_pages(call.db, call.actor, call.workspace_id)
    search = call.text("search")
    return render_tags(await call.repo.list_tags(call.workspace_id, search, hidden=hidden), search)


@command("search")
async def cmd_search(call: CommandCall) -> Reply:
    query = call.text("q", required=True)
    hidden = await _hidden_pages(call.db, call.actor, call.workspace_id)
    return render_search(query, await call.repo.search_pages(call.workspace_id, query, hidden=hidden))


@command("daily")
async def cmd_daily(call: CommandCall) -> Reply:
    day = parse_day(call.text("date"))
    page, _ = await call.repo.open_or_create_daily(call.workspace_id, day, create=False)
    if page is not None:
        await require_read(call.db, call.actor, call.workspace_id, page.id)
        return render_page_open(page)
    await require_write(call.db, call.actor, call.workspace_id)
    try:
        page, _ = await call.repo.open_or_create_daily(call.workspace_id, day, create=True)
    except SlugConflictError:
        # created by a concurrent call for the same day
        page, _ = await call.repo.open_or_create_daily(call.workspace_id, day, create=False)
        if page is None:
            raise
        await require_read(call.db, call.actor, call.workspace_id, page.id)
        return render_page_open(page)
    _audit(call.actor, "daily_create", call.workspace_id, page)
    return render_page_open(page)


@command("template-create")
async def cmd_template_create(call: CommandCall) -> Reply:
    name = clean_title(call.text("name", required=True))
    content = call.raw_text("content")
    if not content.strip():
        raise ValidationError("content is required.")
    existing = await call.repo.get_template(call.workspace_id, name)
    await require_write(call.db, call.actor, call.workspace_id, existing.id if existing else None)
    before = _page_state(existing) if existing else None
    page, created = await call.repo.save_template(call.workspace_id, name, content, author_id=call.actor.user_id)
    _audit(call.actor, "template_create" if created else "template_update", call.workspace_id, page, before)
    return message(f"Template {name} {'created' if created else 'updated'} (slug: {page.slug}).")


@command("template-use")
async def cmd_template_use(call: CommandCall) -> Reply:
    name = call.text("name", required=True)
    title = clean_title(call.text("title", required=True))
    template = await call.repo.get_template(call.workspace_id, name)
    if template is None:
        raise NotFoundError(f"Template not found: {name}")
    await require_read(call.db, call.actor, call.workspace_id, template.id)
    await require_write(call.db, call.actor, call.workspace_id)
    _, plain = unfold_title(title)
    body = fill_template(template.body, title=plain, day=utc_now().date())
    page = await call.repo.create_page(call.workspace_id, title=title, body=body)
    _audit(call.actor, "template_use", call.workspace_id, page, template=template.slug)
    return render_page_open(page)


@command("backlinks")
async def cmd_backlinks(call: CommandCall) -> Reply:
    page = await _readable_page(call)
    hidden = await unreadable_page_ids(call.db, call.actor, call.workspace_id)
    return render_backlinks(page, await call.repo.backlinks(page, hidden=hidden))


@command("export")
async def cmd_export(call: CommandCall) -> Reply:
    return render_export(await _readable_page(call))


@command("import")
async def cmd_import(call: CommandCall) -> Reply:
    page = await _writable_page(call)
    content = call.raw_text("content")
    before = _page_state(page)
    page = await call.repo.update_page(page, author_id=call.actor.user_id, body=content)
    _audit(call.actor, "page_import", call.workspace_id, page, before)
    return message(f"Imported into {page.title} (version {page.version}).")


@command("page-history")
async def cmd_page_history(call: CommandCall) -> Reply:
    page = await _readable_page(call)
    versions = await list_history(call.db, page.id, call.integer("limit"))
    return render_history(page, versions)


@command("page-rollback")
async def cmd_page_rollback(call: CommandCall) -> Reply:
    page = await _writable_page(call)
    before = _page_state(page)
    page, target = await rollback_page(
        call.db,
        page,
        target_version=call.integer("version"),
        author_id=call.actor.user_id,
    )
    _audit(call.actor, "page_rollback", call.workspace_id, page, before, restored_version=target.version)
    return message(f"Rolled back {page.title} to v{target.version}; page is now at version {page.version}.")


async def _optional_page(call: CommandCall) -> Page | None:
    query = call.text("query")
    if not query:
        return None
    return await call.repo.require_page(call.workspace_id, query)


def _scope_label(page: Page | None) -> str:
    return f"page {page.slug}" if page is not None else "the workspace"


@command("perm-set")
async def cmd_perm_set(call: CommandCall) -> Reply:
    require_admin(call.actor)
    role_id = normalize_snowflake(call.text("role_id", required=True))
    channel_id = normalize_snowflake(call.text("channel_id"))
    page = await _optional_page(call)
    rule = await set_rule(
        call.db,
        workspace_id=call.workspace_id,
        role_id=role_id,
        allow_read=call.flag("read"),
        allow_write=call.flag("write"),
        page_id=page.id if page else None,
        channel_id=channel_id,
    )
    labels = {page.id: page.slug} if page else {}
    write_audit(
        "perm_set", call.actor.user_id, call.workspace_id,
        page_id=rule.page_id, role_id=role_id, channel_id=channel_id,
        can_read=rule.can_read, can_write=rule.can_write,
    )
    return message(f"Saved: {describe_rule(rule, labels)}")


@command("perm-list")
async def cmd_perm_list(call: CommandCall) -> Reply:
    require_admin(call.actor)
    page = await _optional_page(call)
    rules = await list_rules(call.db, call.workspace_id, page.id if page else None)
    labels = await call.repo.page_labels([rule.page_id for rule in rules])
    return render_rules(rules, labels, _scope_label(page))


@command("perm-clear")
async def cmd_perm_clear(call: CommandCall) -> Reply:
    require_admin(call.actor)
    page = await _optional_page(call)
    removed = await clear_rules(call.db, call.workspace_id, page.id if page else None)
    write_audit("perm_clear", call.actor.user_id, call.workspace_id, page_id=page.id if page else None, removed=removed)
    return message(f"Removed {removed} rule(s) from {_scope_label(page)}.")


@command("perm-remove")
async def cmd_perm_remove(call: CommandCall) -> Reply:
    require_admin(call.actor)
    role_id = normalize_snowflake(call.text("role_id", required=True))
    channel_id = normalize_snowflake(call.text("channel_id"))
    page = await _optional_page(call)
    removed = await remove_rule(
        call.db,
        workspace_id=call.workspace_id,
        role_id=role_id,
        page_id=page.id if page else None,
        channel_id=channel_id,
    )
    if not removed:
        raise NotFoundError("No matching rule.")
    write_audit("perm_remove", call.actor.user_id, call.workspace_id, page_id=page.id if page else None, role_id=role_id, channel_id=channel_id)
    return message(f"Removed the rule for role <@&{role_id}> on {_scope_label(page)}.")


async def handle_command(event: CommandEvent, db: BoundedSession, repo: NotesRepo) -> Reply:
    handler = COMMAND_HANDLERS.get(event.command)
    if handler is None:
        return message(UNKNOWN_COMMAND)
    call = CommandCall(event=event, actor=event.to_actor(), workspace_id=event.workspace_id, db=db, repo=repo)
    return await handler(call)


async def _page_from_token(repo: NotesRepo, workspace_id: str, slug: str) -> Page:
    page = await repo.get_page_by_slug(workspace_id, slug)
    if page is None:
        raise NotFoundError("Page not found.")
    return page


def _require_modal_size(page: Page) -> None:
    """The edit form replaces the whole body, so it only handles bodies it can hold."""
    if len(page.body or "") > MODAL_BODY_LIMIT:
        raise ValidationError(
            f"{page.title} is longer than {MODAL_BODY_LIMIT} characters and cannot be edited here; use /import instead."
        )


async def handle_button(event: ButtonEvent, db: BoundedSession, repo: NotesRepo) -> Reply:
    token = decode_token(event.custom_id, event.workspace_id)
    actor = event.to_actor()
    ws = token.workspace_id

    if token.kind is TokenKind.LIST:
        return await _page_list(db, repo, actor, ws, token.search, token.page)
    if token.kind is TokenKind.MODAL_EDIT:
        raise InvalidTokenError()

    page = await _page_from_token(repo, ws, token.slug)
    if token.kind is TokenKind.OPEN:
        await require_read(db, actor, ws, page.id)
        return render_page_open(page)

    await require_write(db, actor, ws, page.id)
    if token.kind is TokenKind.EDIT:
        _require_modal_size(page)
        return render_edit_modal(page)
    if token.kind is TokenKind.DELETE:
        return render_delete_prompt(page)

    before = _page_state(page)
    rules_removed = await repo.delete_page(page, author_id=actor.user_id)
    write_audit("page_delete", actor.user_id, ws, page_id=page.id, before=before, rules_removed=rules_removed)
    return message(f"Deleted {before['title']} (slug: {before['slug']}).")


async def handle_modal(event: ModalSubmitEvent, db: BoundedSession, repo: NotesRepo) -> Reply:
    token = decode_token(event.custom_id, event.workspace_id)
    if token.kind is not TokenKind.MODAL_EDIT:
        raise InvalidTokenError()
    actor = event.to_actor()
    page = await _page_from_token(repo, token.workspace_id, token.slug)
    await require_write(db, actor, token.workspace_id, page.id)
    _require_modal_size(page)
    before = _page_state(page)
    page = await repo.update_page(page, author_id=actor.user_id, body=event.fields.get("content", ""))
    write_audit("page_edit", actor.user_id, token.workspace_id, page_id=page.id, before=before, after=_page_state(page))
    return render_page_open(page)


async def handle_autocomplete(event: AutocompleteEvent, ctx: NotesContext) -> Reply:
    """Suggest pages for a focused "query" option. Failures answer with no choices."""
    if not event.workspace_id or event.command not in AUTOCOMPLETE_COMMANDS or event.focused_option != "query":
        return Reply()
    try:
        async with ctx.open_db() as db:
            actor = event.to_actor()
            if not await can_read(db, actor, event.workspace_id):
                return Reply()
            hidden = await unreadable_page_ids(db, actor, event.workspace_id)
            rows = await NotesRepo(db).autocomplete(event.workspace_id, event.focused_value, hidden=hidden)
    except NotesError as exc:
        logger.warning("autocomplete for %s failed: %s", event.command, exc.message)
        return Reply()
    return Reply(choices=[Choice(name=row.title[:CHOICE_NAME_LIMIT], value=row.slug) for row in rows])


def _describe(event) -> str:
    if isinstance(event, (CommandEvent, AutocompleteEvent)):
        return event.command
    return event.custom_id


async def dispatch(event: CommandEvent | ButtonEvent | ModalSubmitEvent | AutocompleteEvent, ctx: NotesContext) -> Reply:
    logger.info(
        "interaction received: id=%s type=%s target=%s workspace=%s user=%s",
        event.interaction_id,
        event.type,
        _describe(event),
        event.workspace_id,
        event.actor.user_id,
    )
    try:
        if isinstance(event, AutocompleteEvent):
            return await handle_autocomplete(event, ctx)
        if not event.workspace_id:
            return message(NO_SERVER if isinstance(event, CommandEvent) else InvalidTokenError.user_message)

        async with ctx.open_db() as db:
            repo = NotesRepo(db)
            await repo.ensure_workspace(event.workspace_id)
            if isinstance(event, CommandEvent):
                return await handle_command(event, db, repo)
            if isinstance(event, ButtonEvent):
                return await handle_button(event, db, repo)
            return await handle_modal(event, db, repo)
    except NotesError as exc:
        logger.info("interaction %s refused: %s", event.interaction_id, exc.message)
        return message(exc.message)
    except Exception:
        logger.exception("interaction %s failed", event.interaction_id)
        return message(GENERIC_ERROR)
