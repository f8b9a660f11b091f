"""Data models for conversations, attachments and API payloads."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from .config import DEFAULT_MODEL, DEFAULT_TITLE


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class Message(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    role: Role
    content: str = ""
    created_at: datetime = Field(default_factory=_now, alias="createdAt")


class Attachment(BaseModel):
    """A file attached to a conversation.

    ``file_uuid`` is None when the upload response did not reveal an id;
    such attachments are shown locally but never sent to the API.
    """

    model_config = ConfigDict(populate_by_name=True)

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    display_name: str = Field(alias="displayName")
    file_uuid: str | None = Field(default=None, alias="fileUUID")


class Conversation(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    title: str = DEFAULT_TITLE
    model: str = DEFAULT_MODEL
    messages: list[Message] = []
    attachments: list[Attachment] = []
    created_at: datetime = Field(default_factory=_now, alias="createdAt")
    updated_at: datetime = Field(default_factory=_now, alias="updatedAt")

    def touch(self):
        self.updated_at = max(_now(), self.created_at)

    def find_message(self, message_id: uuid.UUID) -> Message | None:
        for msg in self.messages:
            if msg.id == message_id:
                return msg
        return None

    @property
    def file_uuids(self) -> list[str]:
        """Remote ids of attachments that can be referenced in a request."""
        return [a.file_uuid for a in self.attachments if a.file_uuid]


class RemoteFile(BaseModel):
    """A file known to the provider, as returned by the file listing."""

    file_uuid: str
    file_name: str
    tokens: int | None = None
    bytes: int | None = None


class AIModel(BaseModel):
    name: str
    developer: str
    display_name: str
    max_tokens: int
    vision: bool


class Settings(BaseModel):
    last_model: str = DEFAULT_MODEL


# Wire payloads

class ModelsResponse(BaseModel):
    data: list[AIModel]


class FilesResponse(BaseModel):
    data: list[RemoteFile]


class CompletionMessage(BaseModel):
    content: str
    role: str


class CompletionChoice(BaseModel):
    message: CompletionMessage


class CompletionResponse(BaseModel):
    choices: list[CompletionChoice]
    model: str


class StreamingChunk(BaseModel):
    type: str
    message: str
