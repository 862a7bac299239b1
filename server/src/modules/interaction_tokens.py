"""
Routing tokens carried in button / modal custom ids.

The chat UI keeps no server-side session, so everything a follow-up click
needs travels inside the token:

    pl|<workspace>|<quoted search>|<page>     paginated page list
    po|<workspace>|<slug>                     open / refresh a page
    pe|<workspace>|<slug>                     edit button
    pm|<workspace>|<slug>                     edit modal submission
    pd|<workspace>|<slug>                     delete button
    pdc|<workspace>|<slug>                    delete confirmation

Free-text fields are percent-encoded because ``|`` is the delimiter. A token
is only honoured inside the workspace it was minted in.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from urllib.parse import quote, unquote

from server.src.modules.notes_errors import InvalidTokenError

logger = logging.getLogger(__name__)

DELIMITER = "|"
MAX_TOKEN_LENGTH = 100
MAX_LIST_PAGE = 1000


class TokenKind(str, Enum):
    LIST = "pl"
    OPEN = "po"
    EDIT = "pe"
    MODAL_EDIT = "pm"
    DELETE = "pd"
    DELETE_CONFIRM = "pdc"


TOKEN_ARITY = {
    TokenKind.LIST: 4,
    TokenKind.OPEN: 3,
    TokenKind.EDIT: 3,
    TokenKind.MODAL_EDIT: 3,
    TokenKind.DELETE: 3,
    TokenKind.DELETE_CONFIRM: 3,
}


@dataclass(frozen=True)
class InteractionToken:
    kind: TokenKind
    workspace_id: str
    slug: str = ""
    search: str = ""
    page: int = 1


def clamp_page(value: int | None) -> int:
    try:
        page = int(value or 1)
    except (TypeError, ValueError):
        page = 1
    return max(1, min(MAX_LIST_PAGE, page))


def _escape(value: str) -> str:
    return quote(value or "", safe="")


def _join(kind: TokenKind, *fields: str) -> str:
    return DELIMITER.join([kind.value, *fields])


def encode_list_token(workspace_id: str, search: str = "", page: int = 1) -> str:
    """List tokens shorten the search text rather than exceed the length bound."""
    text = (search or "").strip()
    page_field = str(clamp_page(page))
    token = _join(TokenKind.LIST, workspace_id, _escape(text), page_field)
    while len(token) > MAX_TOKEN_LENGTH and text:
        text = text[:-1]
        token = _join(TokenKind.LIST, workspace_id, _escape(text), page_field)
    if len(token) > MAX_TOKEN_LENGTH:
        raise ValueError("workspace id too long for an interaction token")
    return token


def encode_page_token(kind: TokenKind, workspace_id: str, slug: str) -> str:
    if kind is TokenKind.LIST:
        raise ValueError("list tokens are built with encode_list_token")
    token = _join(kind, workspace_id, _escape(slug))
    if len(token) > MAX_TOKEN_LENGTH:
        raise ValueError(f"interaction token longer than {MAX_TOKEN_LENGTH} characters")
    return token


def encode_token(token: InteractionToken) -> str:
    if token.kind is TokenKind.LIST:
        return encode_list_token(token.workspace_id, token.search, token.page)
    return encode_page_token(token.kind, token.workspace_id, token.slug)


def parse_token(raw: str | None) -> InteractionToken | None:
    """Structural decode only: kind, arity and required fields. None when malformed."""
    parts = str(raw or "").split(DELIMITER)
    try:
        kind = TokenKind(parts[0])
    except ValueError:
        return None
    if len(parts) != TOKEN_ARITY[kind]:
        return None
    workspace_id = parts[1]
    if not workspace_id:
        return None
    if kind is TokenKind.LIST:
        return InteractionToken(
            kind=kind,
            workspace_id=workspace_id,
            search=unquote(parts[2]),
            page=clamp_page(parts[3]),
        )
    slug = unquote(parts[2])
    if not slug:
        return None
    return InteractionToken(kind=kind, workspace_id=workspace_id, slug=slug)


def decode_token(raw: str | None, workspace_id: str | None) -> InteractionToken:
    """
    Decode a token received in `workspace_id`.

    Malformed tokens and tokens minted in another workspace both raise
    InvalidTokenError; the second case is a replay and is logged.
    """
    token = parse_token(raw)
    if token is None:
        raise InvalidTokenError()
    if not workspace_id or token.workspace_id != workspace_id:
        logger.warning(
            "rejected cross-workspace token: minted=%s received=%s kind=%s",
            token.workspace_id,
            workspace_id,
            token.kind.value,
        )
        raise InvalidTokenError()
    return token
