from server.src.modules.command_catalog import (
    AUTOCOMPLETE_COMMANDS,
    COMMANDS,
    COMMANDS_BY_NAME,
    OptionType,
    command_payloads,
)
from server.src.modules.notes_dispatcher import COMMAND_HANDLERS


def test_every_command_has_a_handler():
    assert set(COMMANDS_BY_NAME) == set(COMMAND_HANDLERS)
    assert len(COMMANDS) == len(COMMANDS_BY_NAME)


def test_payload_shape():
    payloads = {p["name"]: p for p in command_payloads()}
    rename = payloads["page-rename"]
    assert rename["type"] == 1
    assert [o["name"] for o in rename["options"]] == ["query", "title", "keep_slug"]
    assert rename["options"][0]["autocomplete"] is True
    assert rename["options"][2]["type"] == int(OptionType.BOOLEAN)
    assert payloads["page-history"]["options"][1]["type"] == int(OptionType.INTEGER)
    assert payloads["help"]["options"] == []


def test_required_options_come_first():
    # the chat platform rejects optional options declared before required ones
    for cmd in COMMANDS:
        flags = [opt.required for opt in cmd.options]
        assert flags == sorted(flags, reverse=True), cmd.name


def test_autocomplete_commands():
    assert "page-open" in AUTOCOMPLETE_COMMANDS
    assert "perm-clear" in AUTOCOMPLETE_COMMANDS
    assert "page-list" not in AUTOCOMPLETE_COMMANDS
