"""Parse the line-delimited completion stream into text deltas."""

from __future__ import annotations

import codecs
import logging
import re
from collections.abc import AsyncIterable, AsyncIterator

from pydantic import ValidationError

from .models import StreamingChunk

logger = logging.getLogger(__name__)

DONE_SENTINEL = "[DONE]"
DATA_PREFIX = "data:"

_DETAILS_BLOCK = re.compile(r"<details.*?>.*?</details>", re.DOTALL)
_TOOL_RESULT_LINE = re.compile(r"^.*Tool result.*$", re.IGNORECASE | re.MULTILINE)


class LineDecoder:
    """Reassemble UTF-8 text lines from arbitrarily split byte chunks.

    Bytes of a multi-byte character cut across chunks stay buffered in the
    incremental decoder; a line is only emitted once its newline arrives.
    """

    def __init__(self):
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    def feed(self, chunk: bytes) -> list[str]:
        self._buffer += self._decoder.decode(chunk)
        lines: list[str] = []
        while "\n" in self._buffer:
            line, self._buffer = self._buffer.split("\n", 1)
            lines.append(line.replace("\r", ""))
        return lines

    @property
    def pending(self) -> str:
        """Text received after the last newline, not yet a full line."""
        return self._buffer


def clean_line(line: str) -> str:
    """Strip the optional ``data:`` prefix (only the five characters)."""
    if line.startswith(DATA_PREFIX):
        return line[len(DATA_PREFIX):]
    return line


def extract_delta(cleaned: str) -> str:
    """Return the text carried by a non-empty stream line.

    Lines that aren't a ``{type, message}`` object are passed through verbatim.
    """
    try:
        return StreamingChunk.model_validate_json(cleaned).message
    except ValidationError:
        logger.debug("Stream line is not a JSON chunk, using raw text: %r", cleaned[:80])
        return cleaned


async def iter_deltas(chunks: AsyncIterable[bytes]) -> AsyncIterator[str]:
    """Yield text deltas from a 2xx streaming body until ``[DONE]`` or EOF.

    An unterminated trailing fragment at EOF is discarded.
    """
    decoder = LineDecoder()
    async for chunk in chunks:
        for line in decoder.feed(chunk):
            cleaned = clean_line(line)
            if not cleaned:
                continue
            if cleaned.strip() == DONE_SENTINEL:
                return
            yield extract_delta(cleaned)

    if decoder.pending:
        logger.debug("Discarding unterminated stream fragment: %r", decoder.pending[:80])


def clean_streaming(token: str) -> str:
    """Suppress tool/debug wrapper tokens before they reach the transcript."""
    if "<details" in token or "</details>" in token:
        return ""
    if '"exit_code"' in token and '"output"' in token:
        return ""
    return token


def clean_final(text: str) -> str:
    """Remove ``<details>`` blocks and "Tool result" lines from a finished reply."""
    text = _DETAILS_BLOCK.sub("", text)
    text = _TOOL_RESULT_LINE.sub("", text)
    return text.strip()


class DeltaBuffer:
    """Pending text between the stream reader and the periodic flush.

    Only touched from the event loop thread, so no locking is needed.
    """

    def __init__(self):
        self._parts: list[str] = []

    def feed(self, delta: str):
        cleaned = clean_streaming(delta)
        if cleaned:
            self._parts.append(cleaned)

    def drain(self) -> str:
        text = "".join(self._parts)
        self._parts.clear()
        return text

    def clear(self):
        self._parts.clear()

    def __bool__(self) -> bool:
        return bool(self._parts)
