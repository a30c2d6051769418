import codecs
import json
import logging
from typing import Any

logger = logging.getLogger(__name__)


class StreamDecoder:
    """Reassemble newline-delimited JSON records from arbitrary byte chunks.

    A line is only parsed once its terminating newline has arrived, so a record
    split across two network reads is joined before parsing. Lines that are
    not JSON objects are dropped and never abort the stream.
    """

    def __init__(self, encoding: str = "utf-8"):
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._buffer = ""
        self.records = 0
        self.dropped = 0

    @property
    def pending(self) -> str:
        return self._buffer

    def feed(self, chunk: bytes | str) -> list[dict[str, Any]]:
        if isinstance(chunk, bytes):
            text = self._decoder.decode(chunk)
        else:
            text = chunk
        if not text:
            return []

        self._buffer += text
        *lines, self._buffer = self._buffer.split("\n")
        return self._parse_lines(lines)

    def flush(self) -> list[dict[str, Any]]:
        tail = self._buffer + self._decoder.decode(b"", final=True)
        self._buffer = ""
        self._decoder.reset()
        return self._parse_lines([tail])

    def _parse_lines(self, lines: list[str]) -> list[dict[str, Any]]:
        out: list[dict[str, Any]] = []
        for line in lines:
            line = line.strip()
            if not line:
                continue
            try:
                record = json.loads(line)
            except json.JSONDecodeError as e:
                self.dropped += 1
                logger.debug(f"Dropping malformed stream line ({e}): {line[:200]!r}")
                continue
            if not isinstance(record, dict):
                self.dropped += 1
                logger.debug(f"Dropping non-object stream record: {line[:200]!r}")
                continue
            self.records += 1
            out.append(record)
        return out
