import pytest

from server.src.modules.interaction_tokens import (
    MAX_TOKEN_LENGTH,
    InteractionToken,
    TokenKind,
    decode_token,
    encode_list_token,
    encode_page_token,
    encode_token,
    parse_token,
)
from server.src.modules.notes_errors import InvalidTokenError


def test_list_token_round_trip_unescapes_search():
    raw = encode_list_token("T1", "foo bar", 2)
    assert raw == "pl|T1|foo%20bar|2"
    token = decode_token(raw, "T1")
    assert token == InteractionToken(kind=TokenKind.LIST, workspace_id="T1", search="foo bar", page=2)


def test_delimiter_inside_search_is_escaped():
    raw = encode_list_token("T1", "a|b", 1)
    assert raw.count("|") == 3
    assert decode_token(raw, "T1").search == "a|b"


def test_token_from_another_workspace_is_rejected():
    raw = encode_page_token(TokenKind.OPEN, "T1", "my-notes")
    assert decode_token(raw, "T1").slug == "my-notes"
    with pytest.raises(InvalidTokenError):
        decode_token(raw, "T2")
    with pytest.raises(InvalidTokenError):
        decode_token(raw, None)


@pytest.mark.parametrize(
    "raw",
    [
        "",
        "zz|T1|slug",
        "po|T1",
        "po|T1|slug|extra",
        "pl|T1|search",
        "po||slug",
        "po|T1|",
        None,
    ],
)
def test_malformed_tokens_are_rejected(raw):
    assert parse_token(raw) is None
    with pytest.raises(InvalidTokenError):
        decode_token(raw, "T1")


def test_non_numeric_page_falls_back_to_one():
    assert decode_token("pl|T1|x|abc", "T1").page == 1
    assert decode_token("pl|T1|x|0", "T1").page == 1
    assert decode_token("pl|T1|x|99999", "T1").page == 1000


def test_every_page_kind_round_trips():
    for kind in (TokenKind.OPEN, TokenKind.EDIT, TokenKind.MODAL_EDIT, TokenKind.DELETE, TokenKind.DELETE_CONFIRM):
        token = InteractionToken(kind=kind, workspace_id="123", slug="page-2")
        assert parse_token(encode_token(token)) == token


def test_long_search_is_shortened_to_fit():
    raw = encode_list_token("123456789012345678", "ü" * 200, 3)
    assert len(raw) <= MAX_TOKEN_LENGTH
    token = decode_token(raw, "123456789012345678")
    assert token.page == 3
    assert set(token.search) == {"ü"}


def test_list_kind_needs_list_encoder():
    with pytest.raises(ValueError):
        encode_page_token(TokenKind.LIST, "T1", "slug")
