"""Incremental decoding of line-delimited streaming responses."""

import codecs
import json
import logging
from typing import Any, Dict, List, Mapping, Optional

from keyrelay.errors import (
    SAFETY_FINISH_REASONS,
    StreamDecodeWarning,
    StreamedAPIError,
)
from keyrelay.models import Chunk

logger = logging.getLogger(__name__)

EVENT_PREFIX = "data:"
DONE_SENTINEL = "[DONE]"


def _usage(record: Mapping[str, Any]) -> Optional[Dict[str, int]]:
    metadata = record.get("usageMetadata")
    if not isinstance(metadata, dict):
        return None
    return {
        "prompt_tokens": int(metadata.get("promptTokenCount", 0)),
        "output_tokens": int(metadata.get("candidatesTokenCount", 0)),
        "total_tokens": int(metadata.get("totalTokenCount", 0)),
    }


def chunk_from_record(record: Mapping[str, Any]) -> Chunk:
    """Extract the first candidate's text and finish metadata from a record.

    Accepts provider candidate records as well as bare
    ``{"text": ..., "finishReason": ...}`` records.

    Raises:
        StreamedAPIError: If the record carries a provider error object.
        ValueError: If the record has no recognizable shape.
    """
    error = record.get("error")
    if isinstance(error, dict):
        raise StreamedAPIError(str(error.get("message", "")), error.get("code"))

    if "candidates" in record or "promptFeedback" in record:
        usage = _usage(record)
        feedback = record.get("promptFeedback") or {}
        block_reason = feedback.get("blockReason") if isinstance(feedback, dict) else None
        if block_reason:
            reason = block_reason if block_reason in SAFETY_FINISH_REASONS else "SAFETY"
            return Chunk(text="", finish_reason=reason, usage=usage)

        candidates = record.get("candidates") or []
        if not candidates:
            return Chunk(text="", finish_reason=None, usage=usage)
        candidate = candidates[0]
        parts = (candidate.get("content") or {}).get("parts") or []
        text = "".join(
            part.get("text", "")
            for part in parts
            if isinstance(part, dict) and not part.get("thought")
        )
        return Chunk(text=text, finish_reason=candidate.get("finishReason"), usage=usage)

    if "text" in record:
        return Chunk(
            text=str(record["text"]),
            finish_reason=record.get("finishReason"),
            usage=_usage(record),
        )

    raise ValueError("Record has neither candidates nor text")


def is_blocked(chunk: Chunk) -> bool:
    return chunk.finish_reason in SAFETY_FINISH_REASONS


class StreamDecoder:
    """Turns raw body bytes into chunks, one per complete event line.

    A network read may end mid-line or even mid-character; the trailing
    partial line is carried over and prefixed to the next read.
    """

    def __init__(self, prefix: str = EVENT_PREFIX):
        self.prefix = prefix
        self.chunks_decoded = 0
        self.warnings: List[StreamDecodeWarning] = []
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    def feed(self, data: bytes) -> List[Chunk]:
        text = self._buffer + self._decoder.decode(data)
        lines = text.split("\n")
        self._buffer = lines.pop()
        return self._parse_lines(lines)

    def finish(self) -> List[Chunk]:
        """Flush a final line that was not newline-terminated."""
        text = self._buffer + self._decoder.decode(b"", final=True)
        self._buffer = ""
        return self._parse_lines([text])

    def _parse_lines(self, lines: List[str]) -> List[Chunk]:
        chunks = []
        for line in lines:
            chunk = self._parse_line(line.rstrip("\r"))
            if chunk is not None:
                chunks.append(chunk)
                self.chunks_decoded += 1
        return chunks

    def _parse_line(self, line: str) -> Optional[Chunk]:
        if not line.startswith(self.prefix):
            return None
        body = line[len(self.prefix):].strip()
        if not body or body == DONE_SENTINEL:
            return None
        try:
            record = json.loads(body)
            if not isinstance(record, dict):
                raise ValueError("Event payload is not an object")
            return chunk_from_record(record)
        except StreamedAPIError:
            raise
        except (ValueError, TypeError, AttributeError) as exc:
            warning = StreamDecodeWarning(f"{exc}: {body[:80]}")
            self.warnings.append(warning)
            logger.warning("Skipping malformed stream line: %s", warning)
            return None
