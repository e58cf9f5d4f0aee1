"""
json_stream.py — Incremental JSON token reader for feed response bodies

Reads JSON from a byte chunk iterator (httpx response.iter_bytes()) one
value or structural token at a time, so a large poll-style _changes body is
never buffered whole. Handles: UTF-8 characters split across chunks,
whitespace/heartbeat lines between values, commas and colons inside
containers, depth-counted skipping of values nobody asked for.

Consumed text is dropped before each value is read, so memory holds the
current value, one chunk of lookahead and at most 64 KiB of spent input.
"""

import codecs
import json
import re
from typing import Any, Iterable, List

_WHITESPACE = " \t\r\n"
_CLOSERS = {"{": "}", "[": "]"}

# Characters that matter while scanning the extent of a value.
_STRUCTURE_RE = re.compile(r'[{}\[\]"]')
_STRING_RE = re.compile(r'["\\]')
_SCALAR_END_RE = re.compile(r'[\s,:\]}\[{"]')

# Drop consumed text once this much has accumulated in front of the cursor.
_COMPACT_THRESHOLD = 64 * 1024


class JSONStreamError(ValueError):
    """Malformed JSON or premature end of input."""


def _reject_constant(name: str) -> Any:
    raise JSONStreamError(f"invalid JSON value {name!r}: not a JSON number")


def _loads(text: str) -> Any:
    try:
        return json.loads(text, parse_constant=_reject_constant)
    except json.JSONDecodeError as e:
        raise JSONStreamError(f"invalid JSON value {text[:40]!r}: {e}") from e
    except RecursionError as e:
        raise JSONStreamError(f"JSON value nested too deeply: {text[:40]!r}") from e


def _describe(ch: str) -> str:
    return repr(ch) if ch else "end of input"


class JSONStream:
    """Pull-based JSON reader.

    Structural calls mirror the shape of the document:

        stream.begin("{")
        while stream.more():
            key = stream.key()
            value = stream.value()
        stream.end()

    At top level (outside any container) more() reports whether another
    value follows, which is how newline-delimited continuous feeds are read.
    """

    def __init__(self, chunks: Iterable[bytes]):
        self._chunks = iter(chunks)
        self._decoder = codecs.getincrementaldecoder("utf-8")()
        self._buf = ""
        self._pos = 0
        self._eof = False
        self._stack: List[str] = []
        self._need_comma = False

    # ── Buffer management ─────────────────────────────────────────────

    def _fill(self) -> bool:
        """Append the next non-empty chunk to the buffer. False at end of input."""
        if self._eof:
            return False
        try:
            for chunk in self._chunks:
                text = self._decoder.decode(chunk)
                if text:
                    self._buf += text
                    return True
            self._eof = True
            text = self._decoder.decode(b"", final=True)
        except UnicodeDecodeError as e:
            raise JSONStreamError(f"invalid UTF-8 in stream: {e}") from e
        if text:
            self._buf += text
            return True
        return False

    def _compact(self) -> None:
        if self._pos and (self._pos >= _COMPACT_THRESHOLD or self._pos == len(self._buf)):
            self._buf = self._buf[self._pos:]
            self._pos = 0

    def _peek(self) -> str:
        """Next non-whitespace character (not consumed), or "" at end of input."""
        while True:
            buf = self._buf
            i = self._pos
            n = len(buf)
            while i < n and buf[i] in _WHITESPACE:
                i += 1
            self._pos = i
            if i < n:
                return buf[i]
            self._compact()
            if not self._fill():
                return ""

    def _expect(self, ch: str) -> None:
        got = self._peek()
        if got != ch:
            raise JSONStreamError(f"unexpected {_describe(got)}, want {ch!r}")
        self._pos += 1

    def _before_value(self) -> None:
        if self._stack and self._need_comma:
            self._expect(",")

    # ── Value extent ──────────────────────────────────────────────────

    def _scan(self) -> int:
        """Return the end offset of the value at the cursor, reading more input as needed.

        Objects and arrays are delimited by counting nesting depth; brackets
        and quotes inside strings (including escaped quotes) do not count.
        """
        first = self._peek()
        if not first:
            raise JSONStreamError("unexpected end of JSON input")
        if first in ",:]}":
            raise JSONStreamError(f"unexpected {first!r}, want a value")

        if first not in '{["':
            i = self._pos
            while True:
                m = _SCALAR_END_RE.search(self._buf, i)
                if m:
                    return m.start()
                i = len(self._buf)
                if not self._fill():
                    return i

        depth = 0
        in_string = False
        i = self._pos
        while True:
            buf = self._buf
            m = (_STRING_RE if in_string else _STRUCTURE_RE).search(buf, i)
            if m is None:
                i = len(buf)
                if not self._fill():
                    raise JSONStreamError("unexpected end of JSON input")
                continue
            c = m.group()
            i = m.end()
            if in_string:
                if c == "\\":
                    # Skip the escaped character, which may not have arrived yet.
                    i += 1
                    while i > len(self._buf):
                        if not self._fill():
                            raise JSONStreamError("unexpected end of JSON input")
                    continue
                in_string = False
                if depth == 0:
                    return i
            elif c == '"':
                in_string = True
            elif c in "{[":
                depth += 1
            else:
                depth -= 1
                if depth == 0:
                    return i

    def _take(self) -> str:
        self._compact()
        self._before_value()
        end = self._scan()
        text = self._buf[self._pos:end]
        self._pos = end
        self._need_comma = True
        return text

    # ── Public API ────────────────────────────────────────────────────

    def begin(self, delim: str) -> None:
        """Consume the opening delimiter of an object ("{") or array ("[")."""
        if delim not in _CLOSERS:
            raise ValueError(f"not an opening delimiter: {delim!r}")
        self._compact()
        self._before_value()
        self._expect(delim)
        self._stack.append(_CLOSERS[delim])
        self._need_comma = False

    def end(self) -> None:
        """Consume the closing delimiter of the innermost open container."""
        if not self._stack:
            raise ValueError("end() called outside of a container")
        self._expect(self._stack.pop())
        self._need_comma = True

    def more(self) -> bool:
        """Report whether another element follows in the current container.

        At top level, reports whether another value follows before the end
        of input.
        """
        c = self._peek()
        if not self._stack:
            return c != ""
        if c == self._stack[-1]:
            return False
        if not c:
            raise JSONStreamError("unexpected end of JSON input")
        return True

    def at_end(self) -> bool:
        return not self._stack and self._peek() == ""

    def key(self) -> str:
        """Read an object key and the colon after it."""
        self._before_value()
        if self._peek() != '"':
            raise JSONStreamError(f"unexpected {_describe(self._peek())}, want an object key")
        self._need_comma = False
        name = self.value()
        self._expect(":")
        self._need_comma = False
        return name

    def value(self) -> Any:
        """Read and decode the next complete value."""
        return _loads(self._take())

    def raw(self) -> str:
        """Read the next complete value and return its JSON text undecoded."""
        text = self._take()
        if text[0] not in '{["':
            # Scalars are validated here; containers are checked by the caller on decode.
            _loads(text)
        return text

    def skip(self) -> None:
        """Skip over the next value, whatever its type."""
        self._take()
