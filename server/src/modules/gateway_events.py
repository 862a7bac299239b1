"""
Wire shapes exchanged with the chat gateway relay.

Inbound events are a tagged union on ``type``; replies are a single model that
can carry text, button rows, a modal, or autocomplete choices.
"""

from __future__ import annotations

from enum import IntEnum
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter

from server.src.modules.notes_permissions import Actor, is_admin_bitfield


OptionValue = Union[bool, int, str, None]


class ActorPayload(BaseModel):
    user_id: str
    role_ids: list[str] = Field(default_factory=list)
    permissions: str | int | None = None


class EventBase(BaseModel):
    interaction_id: str = ""
    workspace_id: str | None = None
    channel_id: str | None = None
    actor: ActorPayload

    def to_actor(self) -> Actor:
        return Actor(
            user_id=self.actor.user_id,
            role_ids=tuple(self.actor.role_ids or ()),
            channel_id=self.channel_id,
            is_admin=is_admin_bitfield(self.actor.permissions),
        )


class CommandEvent(EventBase):
    type: Literal["command"] = "command"
    command: str
    options: dict[str, OptionValue] = Field(default_factory=dict)


class ButtonEvent(EventBase):
    type: Literal["button"] = "button"
    custom_id: str


class ModalSubmitEvent(EventBase):
    type: Literal["modal_submit"] = "modal_submit"
    custom_id: str
    fields: dict[str, str] = Field(default_factory=dict)


class AutocompleteEvent(EventBase):
    type: Literal["autocomplete"] = "autocomplete"
    command: str
    focused_option: str = "query"
    focused_value: str = ""


InteractionEvent = Annotated[
    Union[CommandEvent, ButtonEvent, ModalSubmitEvent, AutocompleteEvent],
    Field(discriminator="type"),
]
interaction_event_adapter: TypeAdapter[InteractionEvent] = TypeAdapter(InteractionEvent)


def parse_event(payload: dict) -> CommandEvent | ButtonEvent | ModalSubmitEvent | AutocompleteEvent:
    return interaction_event_adapter.validate_python(payload)


class ButtonStyle(IntEnum):
    PRIMARY = 1
    SECONDARY = 2
    SUCCESS = 3
    DANGER = 4


class Button(BaseModel):
    custom_id: str
    label: str
    style: ButtonStyle = ButtonStyle.SECONDARY
    disabled: bool = False


class ActionRow(BaseModel):
    buttons: list[Button] = Field(default_factory=list)


class TextInput(BaseModel):
    custom_id: str
    label: str
    value: str = ""
    style: Literal["short", "paragraph"] = "paragraph"
    required: bool = False
    max_length: int = 4000


class Modal(BaseModel):
    custom_id: str
    title: str
    inputs: list[TextInput] = Field(default_factory=list)


class Choice(BaseModel):
    name: str
    value: str


class Reply(BaseModel):
    content: str = ""
    components: list[ActionRow] = Field(default_factory=list)
    modal: Modal | None = None
    choices: list[Choice] = Field(default_factory=list)
    ephemeral: bool = True
