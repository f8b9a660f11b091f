"""Send pipeline: user message → placeholder → stream → throttled flush → finalize."""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum

from .config import DEFAULT_TITLE, FLUSH_INTERVAL_SECONDS, SYSTEM_PROMPT, TITLE_MAX_CHARS
from .errors import HatzError
from .models import Conversation, Message, Role
from .store import ChatStore
from .streaming import DeltaBuffer, clean_final

logger = logging.getLogger(__name__)


class SendState(str, Enum):
    IDLE = "idle"
    SENDING = "sending"
    STREAMING = "streaming"
    FINALIZING = "finalizing"


@dataclass
class _Operation:
    conversation_id: uuid.UUID
    assistant_id: uuid.UUID
    state: SendState = SendState.SENDING
    buffer: DeltaBuffer = field(default_factory=DeltaBuffer)
    cancelled: bool = False
    task: asyncio.Task | None = None
    ticker: asyncio.Task | None = None


def build_request_messages(convo: Conversation, exclude: uuid.UUID | None = None) -> list[dict[str, str]]:
    """System instruction followed by the conversation so far."""
    messages = [{"role": Role.SYSTEM.value, "content": SYSTEM_PROMPT}]
    messages += [
        {"role": msg.role.value, "content": msg.content}
        for msg in convo.messages
        if msg.id != exclude
    ]
    return messages


class Sender:
    """Runs at most one send per conversation.

    Deltas land in a per-operation buffer; a ticker task moves them into the
    assistant placeholder every ``flush_interval`` seconds without touching
    disk. The conversation is persisted before streaming starts and once more
    when the stream ends or fails.
    """

    def __init__(self, store: ChatStore, flush_interval: float = FLUSH_INTERVAL_SECONDS):
        self.store = store
        self.flush_interval = flush_interval
        self._active: dict[uuid.UUID, _Operation] = {}

    def state(self, conversation_id: uuid.UUID) -> SendState:
        op = self._active.get(conversation_id)
        return op.state if op else SendState.IDLE

    def is_sending(self, conversation_id: uuid.UUID) -> bool:
        return conversation_id in self._active

    def start(self, conversation_id: uuid.UUID, text: str) -> asyncio.Task | None:
        """Schedule ``send`` as a task; returns None if the send is rejected."""
        if not self._can_send(conversation_id, text):
            return None
        return asyncio.create_task(self.send(conversation_id, text))

    def _can_send(self, conversation_id: uuid.UUID, text: str) -> bool:
        if not text.strip():
            return False
        if conversation_id in self._active:
            return False
        if not self.store.api_key:
            self.store.set_error("No API key set. Add your Hatz API key first.")
            return False
        return self.store.get(conversation_id) is not None

    async def send(self, conversation_id: uuid.UUID, text: str) -> bool:
        """Send ``text`` and stream the reply into the conversation.

        Returns False when rejected (empty text, no key, or a send already in
        flight for this conversation). Raises ``CancelledError`` if stopped.
        """
        if not self._can_send(conversation_id, text):
            return False

        text = text.strip()
        convo = self.store.get(conversation_id)

        convo.messages.append(Message(role=Role.USER, content=text))
        convo.touch()
        if convo.title == DEFAULT_TITLE:
            convo.title = text[:TITLE_MAX_CHARS]

        placeholder = Message(role=Role.ASSISTANT, content="")
        convo.messages.append(placeholder)

        op = _Operation(conversation_id=conversation_id, assistant_id=placeholder.id)
        op.task = asyncio.current_task()
        self._active[conversation_id] = op

        try:
            # Persist before streaming so the user's message survives a crash
            self.store.update_conversation(convo, persist=True)
            await self._stream(op, convo)
            if op.cancelled:
                raise asyncio.CancelledError()
            self._finalize(op)
            return True
        except asyncio.CancelledError:
            op.cancelled = True
            logger.info("Send cancelled for conversation %s", conversation_id)
            raise
        except HatzError as e:
            self._fail(op, str(e))
            return True
        except Exception as e:
            logger.exception("Unexpected error while sending")
            self._fail(op, str(e) or type(e).__name__)
            return True
        finally:
            # Back to idle before the await below, so a late stop() finds nothing
            if self._active.get(conversation_id) is op:
                del self._active[conversation_id]
            self._stop_ticker(op)
            if op.ticker is not None:
                await asyncio.gather(op.ticker, return_exceptions=True)

    def stop(self, conversation_id: uuid.UUID) -> bool:
        """Cancel the in-flight send; already flushed text stays in place."""
        op = self._active.get(conversation_id)
        if op is None or op.state == SendState.FINALIZING:
            return False
        op.cancelled = True
        op.buffer.clear()
        self._stop_ticker(op)
        if op.task is not None and op.task is not asyncio.current_task():
            op.task.cancel()
        return True

    async def _stream(self, op: _Operation, convo: Conversation):
        client = self.store.make_client()
        op.state = SendState.STREAMING
        op.ticker = asyncio.create_task(self._tick(op))

        await client.chat_complete(
            model=convo.model,
            messages=build_request_messages(convo, exclude=op.assistant_id),
            file_uuids=convo.file_uuids,
            stream=True,
            on_delta=lambda delta: self._on_delta(op, delta),
        )

    def _on_delta(self, op: _Operation, delta: str):
        if not op.cancelled:
            op.buffer.feed(delta)

    async def _tick(self, op: _Operation):
        while not op.cancelled:
            await asyncio.sleep(self.flush_interval)
            self._flush(op)

    def _stop_ticker(self, op: _Operation):
        if op.ticker is not None and not op.ticker.done():
            op.ticker.cancel()

    def _flush(self, op: _Operation):
        if op.cancelled or not op.buffer:
            return
        convo = self.store.get(op.conversation_id)
        if convo is None:
            op.buffer.clear()
            return
        msg = convo.find_message(op.assistant_id)
        if msg is None:
            op.buffer.clear()
            return

        msg.content += op.buffer.drain()
        convo.touch()
        # Never persist mid-stream: token cadence would turn into disk churn
        self.store.update_conversation(convo, persist=False)

    def _finalize(self, op: _Operation):
        self._stop_ticker(op)
        self._flush(op)
        op.state = SendState.FINALIZING

        convo = self.store.get(op.conversation_id)
        msg = convo.find_message(op.assistant_id) if convo else None
        if msg is None:
            return
        msg.content = clean_final(msg.content)
        convo.touch()
        self.store.update_conversation(convo, persist=True)

    def _fail(self, op: _Operation, error: str):
        self._stop_ticker(op)
        if op.cancelled:
            return
        logger.warning("Send failed: %s", error)
        self.store.set_error(error)

        convo = self.store.get(op.conversation_id)
        msg = convo.find_message(op.assistant_id) if convo else None
        if msg is None:
            return
        msg.content = f"Error: {error}"
        convo.touch()
        self.store.update_conversation(convo, persist=True)
