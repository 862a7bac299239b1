from server.src.modules.gateway_events import (
    ActorPayload,
    AutocompleteEvent,
    ButtonEvent,
    CommandEvent,
    ModalSubmitEvent,
)
from server.src.modules.notes_dispatcher import dispatch
from server.src.modules.notes_permissions import PERMISSION_ADMINISTRATOR, Actor

from tests.conftest import WORKSPACE

ADMIN_PERMISSIONS = str(PERMISSION_ADMINISTRATOR)


def actor_payload(user_id: str = "500", roles=(), admin: bool = False) -> ActorPayload:
    return ActorPayload(user_id=user_id, role_ids=list(roles), permissions=ADMIN_PERMISSIONS if admin else "0")


def member(user_id: str = "500", roles=(), channel_id: str | None = "900", admin: bool = False) -> Actor:
    return Actor(user_id=user_id, role_ids=tuple(roles), channel_id=channel_id, is_admin=admin)


def command(name: str, /, workspace_id: str | None = WORKSPACE, in_channel: str = "900", actor=None, **options):
    return CommandEvent(
        interaction_id=f"cmd-{name}",
        workspace_id=workspace_id,
        channel_id=in_channel,
        actor=actor or actor_payload(),
        command=name,
        options=options,
    )


def button(custom_id: str, workspace_id: str | None = WORKSPACE, actor=None, channel_id: str = "900"):
    return ButtonEvent(
        interaction_id="btn",
        workspace_id=workspace_id,
        channel_id=channel_id,
        actor=actor or actor_payload(),
        custom_id=custom_id,
    )


def modal(custom_id: str, content: str, workspace_id: str | None = WORKSPACE, actor=None):
    return ModalSubmitEvent(
        interaction_id="modal",
        workspace_id=workspace_id,
        channel_id="900",
        actor=actor or actor_payload(),
        custom_id=custom_id,
        fields={"content": content},
    )


def autocomplete(command_name: str, value: str = "", workspace_id: str | None = WORKSPACE, actor=None):
    return AutocompleteEvent(
        interaction_id="auto",
        workspace_id=workspace_id,
        channel_id="900",
        actor=actor or actor_payload(),
        command=command_name,
        focused_option="query",
        focused_value=value,
    )


async def run(ctx, name: str, /, **options):
    return await dispatch(command(name, **options), ctx)
