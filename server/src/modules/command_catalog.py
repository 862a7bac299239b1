"""
Slash commands exposed by the notes bot.

The same table drives command registration (``scripts/deploy_commands.py``),
the ``help`` reply and autocomplete routing.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import IntEnum


class OptionType(IntEnum):
    STRING = 3
    INTEGER = 4
    BOOLEAN = 5


CHAT_INPUT = 1


@dataclass(frozen=True)
class CommandOption:
    name: str
    description: str
    type: OptionType = OptionType.STRING
    required: bool = False
    autocomplete: bool = False

    def to_payload(self) -> dict:
        payload = {
            "name": self.name,
            "description": self.description,
            "type": int(self.type),
            "required": self.required,
        }
        if self.autocomplete:
            payload["autocomplete"] = True
        return payload


@dataclass(frozen=True)
class CommandSpec:
    name: str
    description: str
    options: tuple[CommandOption, ...] = field(default_factory=tuple)

    def to_payload(self) -> dict:
        return {
            "name": self.name,
            "description": self.description,
            "type": CHAT_INPUT,
            "options": [opt.to_payload() for opt in self.options],
        }

    def usage(self) -> str:
        parts = [f"/{self.name}"]
        for opt in self.options:
            parts.append(opt.name if opt.required else f"[{opt.name}]")
        return " ".join(parts)


def _query(required: bool = True) -> CommandOption:
    label = "Slug or title" if required else "Slug or title (optional)"
    return CommandOption("query", label, required=required, autocomplete=True)


COMMANDS: tuple[CommandSpec, ...] = (
    CommandSpec("help", "Shows help for the bot"),
    CommandSpec("page-create", "Create a page", (
        CommandOption("title", "Title", required=True),
        CommandOption("content", "Content (markdown)"),
    )),
    CommandSpec("page-open", "Open a page (by slug or title)", (_query(),)),
    CommandSpec("page-list", "List pages", (
        CommandOption("search", "Filter by title/slug/content"),
    )),
    CommandSpec("page-rename", "Rename a page", (
        _query(),
        CommandOption("title", "New title", required=True),
        CommandOption("keep_slug", "Keep current slug", OptionType.BOOLEAN),
    )),
    CommandSpec("page-move", "Move page into a folder (prefix in title)", (
        _query(),
        CommandOption("folder", "Example: build/guides", required=True),
    )),
    CommandSpec("tag-add", "Add tags to a page", (
        _query(),
        CommandOption("tags", "Example: build,todo,guide", required=True),
    )),
    CommandSpec("tag-remove", "Remove tags from a page", (
        _query(),
        CommandOption("tags", "Example: build,todo", required=True),
    )),
    CommandSpec("tag-list", "List tags", (
        CommandOption("search", "Filter by tag"),
    )),
    CommandSpec("search", "Full-text search", (
        CommandOption("q", "Query", required=True),
    )),
    CommandSpec("daily", "Create/open daily note", (
        CommandOption("date", "YYYY-MM-DD (optional)"),
    )),
    CommandSpec("template-create", "Create/update a template", (
        CommandOption("name", "Template name", required=True),
        CommandOption("content", "Template content (markdown)", required=True),
    )),
    CommandSpec("template-use", "Create a page from a template", (
        CommandOption("name", "Template name", required=True),
        CommandOption("title", "New page title", required=True),
    )),
    CommandSpec("backlinks", "Find pages that link to this page using [[...]]", (_query(),)),
    CommandSpec("export", "Export a page as markdown", (_query(),)),
    CommandSpec("import", "Import markdown content into a page (overwrite)", (
        _query(),
        CommandOption("content", "Markdown content", required=True),
    )),
    CommandSpec("page-history", "Show page version history", (
        _query(),
        CommandOption("limit", "Max results", OptionType.INTEGER),
    )),
    CommandSpec("page-rollback", "Rollback a page to a previous version", (
        _query(),
        CommandOption("version", "Version number (optional)", OptionType.INTEGER),
    )),
    CommandSpec("perm-set", "Set permissions for a role (optional channel / optional page scope)", (
        CommandOption("role_id", "Discord role id", required=True),
        CommandOption("read", "Allow read", OptionType.BOOLEAN, required=True),
        CommandOption("write", "Allow write", OptionType.BOOLEAN, required=True),
        _query(required=False),
        CommandOption("channel_id", "Discord channel id (optional)"),
    )),
    CommandSpec("perm-list", "List permissions (optional page scope)", (_query(required=False),)),
    CommandSpec("perm-clear", "Clear permissions (optional page scope)", (_query(required=False),)),
    CommandSpec("perm-remove", "Remove one permission rule", (
        CommandOption("role_id", "Discord role id", required=True),
        _query(required=False),
        CommandOption("channel_id", "Discord channel id (optional)"),
    )),
)

COMMANDS_BY_NAME = {cmd.name: cmd for cmd in COMMANDS}

# commands whose focused "query" option is answered with page suggestions
AUTOCOMPLETE_COMMANDS = frozenset(
    cmd.name for cmd in COMMANDS if any(opt.autocomplete for opt in cmd.options)
)


def command_payloads() -> list[dict]:
    return [cmd.to_payload() for cmd in COMMANDS]


def help_text() -> str:
    lines = ["Commands", ""]
    lines.extend(cmd.usage() for cmd in COMMANDS if cmd.name != "help")
    lines.append("")
    lines.append("Link pages with [[slug]]. Tag lines look like: tags: a, b")
    return "\n".join(lines)
