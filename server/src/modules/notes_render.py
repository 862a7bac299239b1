from __future__ import annotations

from datetime import datetime
from typing import Iterable

from server.src.modules.gateway_events import ActionRow, Button, ButtonStyle, Modal, Reply, TextInput
from server.src.modules.interaction_tokens import TokenKind, encode_list_token, encode_page_token
from server.src.modules.notes_db import Page, PageVersion, PermissionRule
from server.src.modules.notes_repo import PAGE_LIST_SIZE
from server.src.modules.page_meta import decode_tags


DISPLAY_BUDGET = 1900
ELLIPSIS = "..."
MODAL_BODY_LIMIT = 4000


def trim_for_display(text: str | None, limit: int = DISPLAY_BUDGET) -> str:
    if not text:
        return ""
    if len(text) <= limit:
        return text
    return text[: limit - len(ELLIPSIS)] + ELLIPSIS


def format_timestamp(value: datetime | None) -> str:
    if value is None:
        return "-"
    return value.strftime("%Y-%m-%d %H:%M:%S")


def message(text: str) -> Reply:
    return Reply(content=trim_for_display(text))


def render_page_open(page: Page) -> Reply:
    meta = "\n".join([
        f"version: {page.version}",
        f"updated: {format_timestamp(page.updated_at)}",
    ])
    content = (page.body or "").strip() or "(empty)"
    text = f"{page.title} (slug: {page.slug})\n\n{meta}\n\n{content}"
    row = ActionRow(buttons=[
        Button(custom_id=encode_page_token(TokenKind.EDIT, page.workspace_id, page.slug), label="Edit", style=ButtonStyle.PRIMARY),
        Button(custom_id=encode_page_token(TokenKind.DELETE, page.workspace_id, page.slug), label="Delete", style=ButtonStyle.DANGER),
        Button(custom_id=encode_page_token(TokenKind.OPEN, page.workspace_id, page.slug), label="Refresh"),
    ])
    return Reply(content=trim_for_display(text), components=[row])


def render_page_list(
    workspace_id: str,
    rows: list[Page],
    *,
    search: str,
    total: int,
    current: int,
    total_pages: int,
) -> Reply:
    search = (search or "").strip()
    if not rows:
        return message("No pages found for that search." if search else "No pages yet.")

    start = (current - 1) * PAGE_LIST_SIZE
    header = f"Pages {start + 1}-{start + len(rows)} of {total} (page {current}/{total_pages})"
    if search:
        header += f" | search: {search}"
    lines = [f"{start + i + 1}. {row.title}  |  {row.slug}" for i, row in enumerate(rows)]

    components: list[ActionRow] = []
    if total_pages > 1:
        # distinct custom ids even at the edges, the gateway rejects duplicates
        components.append(ActionRow(buttons=[
            Button(
                custom_id=encode_list_token(workspace_id, search, max(1, current - 1)),
                label="Previous",
                disabled=current <= 1,
            ),
            Button(
                custom_id=encode_list_token(workspace_id, search, min(total_pages, current + 1)),
                label="Next",
                disabled=current >= total_pages,
            ),
        ]))
    return Reply(content=trim_for_display(f"{header}\n\n" + "\n".join(lines)), components=components)


def render_edit_modal(page: Page) -> Reply:
    modal = Modal(
        custom_id=encode_page_token(TokenKind.MODAL_EDIT, page.workspace_id, page.slug),
        title=trim_for_display(f"Edit: {page.title}", 45),
        inputs=[
            TextInput(
                custom_id="content",
                label="Content (markdown)",
                value=(page.body or "")[:MODAL_BODY_LIMIT],
                max_length=MODAL_BODY_LIMIT,
            )
        ],
    )
    return Reply(modal=modal)


def render_delete_prompt(page: Page) -> Reply:
    row = ActionRow(buttons=[
        Button(
            custom_id=encode_page_token(TokenKind.DELETE_CONFIRM, page.workspace_id, page.slug),
            label="Confirm delete",
            style=ButtonStyle.DANGER,
        ),
        Button(custom_id=encode_page_token(TokenKind.OPEN, page.workspace_id, page.slug), label="Cancel"),
    ])
    text = f"Delete {page.title} (slug: {page.slug})? Its history is removed too."
    return Reply(content=trim_for_display(text), components=[row])


def render_history(page: Page, versions: list[PageVersion]) -> Reply:
    if not versions:
        return message(f"{page.title} has no history yet (version {page.version}).")
    lines = [
        f"v{v.version} | {v.title} | {v.slug} | {v.author_id or 'unknown'} | {format_timestamp(v.created_at)}"
        for v in versions
    ]
    header = f"History for {page.title} (current version {page.version})"
    return message(f"{header}\n\n" + "\n".join(lines))


def _snippet(body: str, query: str, width: int = 80) -> str:
    _, text = decode_tags(body or "")
    flat = " ".join(text.split())
    if not flat:
        return ""
    lowered = flat.lower()
    hit = -1
    for term in (query or "").lower().split():
        hit = lowered.find(term)
        if hit >= 0:
            break
    start = max(0, hit - width // 4) if hit >= 0 else 0
    piece = flat[start:start + width]
    prefix = ELLIPSIS if start > 0 else ""
    suffix = ELLIPSIS if start + width < len(flat) else ""
    return f"{prefix}{piece}{suffix}"


def render_search(query: str, hits: list[tuple[Page, float]]) -> Reply:
    if not hits:
        return message(f"No results for: {query}")
    lines = []
    for i, (page, _rank) in enumerate(hits, start=1):
        lines.append(f"{i}. {page.title}  |  {page.slug}")
        snippet = _snippet(page.body, query)
        if snippet:
            lines.append(f"   {snippet}")
    return message(f"Search: {query}\n\n" + "\n".join(lines))


def render_tags(rows: list[tuple[str, int]], search: str = "") -> Reply:
    if not rows:
        return message("No tags found for that search." if search else "No tags yet.")
    lines = [f"#{tag} ({count})" for tag, count in rows]
    return message("Tags\n\n" + "\n".join(lines))


def render_backlinks(page: Page, pages: Iterable[Page]) -> Reply:
    rows = list(pages)
    if not rows:
        return message(f"No pages link to {page.title}. Link with [[{page.slug}]].")
    lines = [f"{i}. {row.title}  |  {row.slug}" for i, row in enumerate(rows, start=1)]
    return message(f"Backlinks to {page.title}\n\n" + "\n".join(lines))


def render_export(page: Page) -> Reply:
    fence = "```"
    overhead = len(fence) * 2 + len("md\n") + 2
    document = f"# {page.title}\n\n{page.body or ''}".rstrip()
    return Reply(content=f"{fence}md\n{trim_for_display(document, DISPLAY_BUDGET - overhead)}\n{fence}")


def describe_rule(rule: PermissionRule, page_labels: dict[str, str]) -> str:
    scope = f"page {page_labels.get(rule.page_id, rule.page_id)}" if rule.page_id else "workspace"
    channel = f"<#{rule.channel_id}>" if rule.channel_id else "any channel"
    return (
        f"{scope} | role <@&{rule.role_id}> | {channel} | "
        f"read={'yes' if rule.can_read else 'no'} write={'yes' if rule.can_write else 'no'}"
    )


def render_rules(rules: list[PermissionRule], page_labels: dict[str, str], scope_label: str) -> Reply:
    if not rules:
        return message(f"No permission rules for {scope_label}; access is open.")
    lines = [describe_rule(rule, page_labels) for rule in rules]
    return message(f"Permission rules for {scope_label}\n\n" + "\n".join(lines))
