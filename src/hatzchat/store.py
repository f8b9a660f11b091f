"""In-memory conversation state with a single mutation entry point."""

from __future__ import annotations

import logging
import mimetypes
import uuid
from collections.abc import Callable
from pathlib import Path

from keyring.errors import KeyringError

from .client import HatzClient
from .config import DEFAULT_TITLE
from .credentials import CredentialStore
from .errors import HatzError, UploadAmbiguousError
from .models import AIModel, Attachment, Conversation, RemoteFile, Settings
from .storage import ChatPersistence, SettingsPersistence

logger = logging.getLogger(__name__)

Listener = Callable[[str], None]

# Change events passed to subscribers
CONVERSATIONS_CHANGED = "conversations"
SELECTION_CHANGED = "selection"
MODELS_CHANGED = "models"
ERROR_CHANGED = "error"


class ChatStore:
    """Owns the conversation list, the selection and the last-used model.

    Readers get copies; every change goes through ``update_conversation``,
    ``new_conversation`` or ``delete_conversation``. Not thread-safe: call it
    from one thread or one event loop.
    """

    def __init__(
        self,
        persistence: ChatPersistence,
        settings: SettingsPersistence,
        credentials: CredentialStore,
        client_factory: Callable[[str], HatzClient] = HatzClient,
    ):
        self._persistence = persistence
        self._settings_persistence = settings
        self._credentials = credentials
        self._client_factory = client_factory
        self._listeners: list[Listener] = []

        self._conversations: list[Conversation] = []
        self.selected_id: uuid.UUID | None = None
        self.available_models: list[AIModel] = []
        self.last_error: str | None = None

        self._settings: Settings = settings.load()
        self.api_key: str = credentials.load() or ""

    # -- observation ----------------------------------------------------

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a change callback; returns a function that removes it."""
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit(self, event: str):
        for listener in list(self._listeners):
            listener(event)

    # -- reads ----------------------------------------------------------

    @property
    def conversations(self) -> list[Conversation]:
        return [c.model_copy(deep=True) for c in self._conversations]

    def get(self, conversation_id: uuid.UUID | None) -> Conversation | None:
        for convo in self._conversations:
            if convo.id == conversation_id:
                return convo.model_copy(deep=True)
        return None

    @property
    def selected(self) -> Conversation | None:
        return self.get(self.selected_id)

    @property
    def last_used_model(self) -> str:
        return self._settings.last_model

    @last_used_model.setter
    def last_used_model(self, model: str):
        if model == self._settings.last_model:
            return
        self._settings = Settings(last_model=model)
        self._settings_persistence.save(self._settings)

    def set_error(self, message: str | None):
        self.last_error = message
        self._emit(ERROR_CHANGED)

    def make_client(self) -> HatzClient:
        return self._client_factory(self.api_key)

    # -- lifecycle ------------------------------------------------------

    def load(self):
        self._conversations = self._persistence.load()

        if self.get(self.selected_id) is None:
            self.selected_id = self._conversations[0].id if self._conversations else None

        selected = self.selected
        if selected is not None and selected.model:
            self.last_used_model = selected.model

        logger.debug("Loaded %d conversations", len(self._conversations))
        self._emit(CONVERSATIONS_CHANGED)
        self._emit(SELECTION_CHANGED)

    def save(self):
        self._persistence.save(self._conversations)

    # -- mutations ------------------------------------------------------

    def select(self, conversation_id: uuid.UUID | None):
        """Select a conversation; an unknown id simply clears the selection."""
        self.selected_id = conversation_id if self.get(conversation_id) else None
        self._emit(SELECTION_CHANGED)

    def new_conversation(self) -> Conversation:
        convo = Conversation(title=DEFAULT_TITLE, model=self.last_used_model)
        self._conversations.insert(0, convo)
        self.selected_id = convo.id
        self.save()
        self._emit(CONVERSATIONS_CHANGED)
        self._emit(SELECTION_CHANGED)
        return convo.model_copy(deep=True)

    def delete_conversation(self, conversation_id: uuid.UUID) -> bool:
        before = len(self._conversations)
        self._conversations = [c for c in self._conversations if c.id != conversation_id]
        if len(self._conversations) == before:
            return False

        if self.selected_id == conversation_id:
            self.selected_id = self._conversations[0].id if self._conversations else None
            self._emit(SELECTION_CHANGED)

        self.save()
        self._emit(CONVERSATIONS_CHANGED)
        return True

    def delete_selected(self) -> bool:
        if self.selected_id is None:
            return False
        return self.delete_conversation(self.selected_id)

    def update_conversation(self, convo: Conversation, persist: bool = True) -> bool:
        """Replace the stored conversation with the same id.

        Returns False (and changes nothing) if the id is unknown.
        """
        for idx, existing in enumerate(self._conversations):
            if existing.id == convo.id:
                self._conversations[idx] = convo.model_copy(deep=True)
                break
        else:
            return False

        if convo.model:
            self.last_used_model = convo.model

        if persist:
            self.save()
        self._emit(CONVERSATIONS_CHANGED)
        return True

    def rename(self, conversation_id: uuid.UUID, title: str) -> bool:
        """Set a new title; empty or whitespace-only titles are rejected."""
        trimmed = title.strip()
        convo = self.get(conversation_id)
        if convo is None or not trimmed:
            return False
        if trimmed != convo.title:
            convo.title = trimmed
            convo.touch()
            self.update_conversation(convo)
        return True

    def set_model(self, conversation_id: uuid.UUID, model: str) -> bool:
        convo = self.get(conversation_id)
        if convo is None or not model:
            return False
        convo.model = model
        return self.update_conversation(convo)

    # -- attachments ----------------------------------------------------

    def add_attachment(self, conversation_id: uuid.UUID, attachment: Attachment) -> bool:
        convo = self.get(conversation_id)
        if convo is None:
            return False
        convo.attachments.append(attachment)
        convo.touch()
        return self.update_conversation(convo)

    def attach_remote_file(self, conversation_id: uuid.UUID, remote: RemoteFile) -> bool:
        """Attach an already-uploaded file; a file attached twice is skipped."""
        convo = self.get(conversation_id)
        if convo is None:
            return False
        if any(a.file_uuid == remote.file_uuid for a in convo.attachments):
            return False
        return self.add_attachment(
            conversation_id,
            Attachment(display_name=remote.file_name, file_uuid=remote.file_uuid),
        )

    def remove_attachment(self, conversation_id: uuid.UUID, attachment_id: uuid.UUID) -> bool:
        convo = self.get(conversation_id)
        if convo is None:
            return False
        remaining = [a for a in convo.attachments if a.id != attachment_id]
        if len(remaining) == len(convo.attachments):
            return False
        convo.attachments = remaining
        convo.touch()
        return self.update_conversation(convo)

    async def upload_file(
        self, conversation_id: uuid.UUID, path: Path
    ) -> tuple[Attachment, UploadAmbiguousError | None]:
        """Upload ``path`` and attach it.

        The attachment is kept even when no file id could be extracted; in that
        case the returned warning carries the raw response body.
        """
        data = path.read_bytes()
        mime_type = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
        raw, file_uuid = await self.make_client().upload_file(data, path.name, mime_type)

        attachment = Attachment(display_name=path.name, file_uuid=file_uuid)
        self.add_attachment(conversation_id, attachment)

        warning = None
        if file_uuid is None:
            warning = UploadAmbiguousError(raw)
            self.set_error(str(warning))
        return attachment, warning

    async def list_remote_files(self) -> list[RemoteFile]:
        return await self.make_client().list_files()

    # -- credentials and models -----------------------------------------

    def set_api_key(self, key: str):
        self.api_key = key.strip()
        try:
            if self.api_key:
                self._credentials.save(self.api_key)
            else:
                self._credentials.delete()
        except KeyringError:
            logger.warning("Could not update stored API key", exc_info=True)

    async def refresh_models(self):
        if not self.api_key:
            return
        try:
            self.available_models = await self.make_client().list_models()
        except HatzError as e:
            logger.warning("Model refresh failed: %s", e)
            self.set_error(str(e))
            return

        names = {m.name for m in self.available_models}
        if self.available_models and self.last_used_model not in names:
            self.last_used_model = self.available_models[0].name
            selected = self.selected
            if selected is not None:
                selected.model = self.last_used_model
                self.update_conversation(selected)

        self._emit(MODELS_CHANGED)
