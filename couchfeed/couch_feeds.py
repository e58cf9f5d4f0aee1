"""
couch_feeds.py — Pull-based decoders for CouchDB _changes and _db_updates feeds

Two wire framings are supported:

  continuous  one JSON object per line, optionally terminated by a row
              carrying "last_seq"; the connection may also simply close.
  poll        a single object {"results": [row, ...], "last_seq": s, ...}
              (feed modes "normal" and "longpoll"), decoded one row per call
              so the results array is never held in memory.

Usage contract: after advance() returns False, always check err() to tell a
clean end of the feed from a failure.

    while feed.advance():
        handle(feed.document_id, feed.sequence)
    if feed.err() is not None:
        ...

The event fields live on the feed object and are overwritten by every
advance() call; use event() for a snapshot that can be kept. A feed must not
be advanced from more than one thread at a time.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union

import httpx

from couch_errors import CouchError, FeedDecodeError, NetworkError
from json_stream import JSONStream, JSONStreamError

logger = logging.getLogger("couchfeed.feeds")

# Feed modes
CONTINUOUS = "continuous"
POLL = "poll"

# Opaque ordering token: an integer on CouchDB 1.x, a string such as
# "2-g1AAAA..." on 2.x and later. Never converted between kinds.
Seq = Union[int, float, str]


def _check_seq(value: Any, what: str, optional: bool = False) -> Optional[Seq]:
    """Validate a decoded sequence token, preserving its type."""
    if value is None and optional:
        return None
    if isinstance(value, (int, float, str)) and not isinstance(value, bool):
        return value
    raise FeedDecodeError(f"unsupported {what} type {type(value).__name__}: {value!r}")


def _is_terminal(row: Dict[str, Any]) -> bool:
    """Terminal rows carry last_seq: true, or (CouchDB 2.x) the final token itself."""
    if "last_seq" not in row:
        return False
    last_seq = row["last_seq"]
    return last_seq is True or not isinstance(last_seq, bool)


def _check_type(value: Any, key: str, kind: type, default: Any) -> Any:
    if value is None:
        return default
    if not isinstance(value, kind) or (kind is int and isinstance(value, bool)):
        raise FeedDecodeError(f"feed key {key!r} has type {type(value).__name__}, want {kind.__name__}")
    return value


# ── Snapshots ─────────────────────────────────────────────────────────


@dataclass(frozen=True)
class ChangeEvent:
    """One row of a _changes feed."""
    document_id: str
    deleted: bool
    sequence: Optional[Seq]
    revisions: Tuple[str, ...]
    document_body: Optional[str] = None

    @property
    def document(self) -> Any:
        return None if self.document_body is None else json.loads(self.document_body)


@dataclass(frozen=True)
class DBUpdateEvent:
    """One row of the _db_updates feed."""
    database_name: str
    event_type: str
    sequence: Optional[Seq]
    ok: bool = False


# ── Base decoder ──────────────────────────────────────────────────────


class Feed:
    """Iterator over one feed response body.

    State: active until the end of the feed, a decode/read error, or close().
    Every exit path releases the response exactly once.
    """

    def __init__(self, response: httpx.Response, mode: str):
        if mode not in (CONTINUOUS, POLL):
            raise ValueError(f"unknown feed mode: {mode!r}")
        self.mode = mode
        self._response = response
        self._stream = JSONStream(response.iter_bytes())
        self._parse = self._parse_continuous if mode == CONTINUOUS else self._parse_poll
        self._started = False
        self._end = False
        self._err: Optional[CouchError] = None
        self._closed = False

    # Hooks for the concrete feeds.

    def _reset(self) -> None:
        raise NotImplementedError

    def _apply_row(self, row: Dict[str, Any]) -> None:
        raise NotImplementedError

    def _apply_terminal(self, row: Dict[str, Any]) -> None:
        """Apply the terminating row of a continuous feed."""
        raise NotImplementedError

    def _apply_trailer(self, key: str) -> bool:
        """Consume the value of a poll trailer key. False leaves it to be skipped."""
        return False

    # Iteration contract.

    def advance(self) -> bool:
        """Decode the next event into the feed's fields.

        Returns False at the end of the feed or on error; err() tells which.
        Once False has been returned, further calls return False without
        touching the stream.
        """
        if self._end:
            return False
        try:
            self._parse()
        except FeedDecodeError as e:
            self._fail(e)
        except JSONStreamError as e:
            err = FeedDecodeError(str(e))
            err.__cause__ = e
            self._fail(err)
        except httpx.StreamClosed:
            # close() from another thread while a read was in flight.
            self._end = True
        except httpx.HTTPError as e:
            if self._closed:
                self._end = True
            else:
                self._fail(NetworkError(f"reading feed failed: {e}"))
        if self._end:
            logger.debug("%s ended (error=%s)", type(self).__name__, self._err)
            self.close()
        return not self._end

    def _fail(self, err: CouchError) -> None:
        logger.warning("%s failed: %s", type(self).__name__, err)
        self._err = err
        self._end = True

    def err(self) -> Optional[CouchError]:
        """The error that ended the feed, or None after a clean end."""
        return self._err

    def close(self) -> None:
        """Release the connection. Safe to call more than once, and before the end."""
        self._end = True
        if self._closed:
            return
        self._closed = True
        self._response.close()

    @property
    def closed(self) -> bool:
        return self._closed

    def event(self) -> Any:
        raise NotImplementedError

    def __iter__(self) -> Iterator[Any]:
        """Yield event snapshots; raises the recorded error after the last one."""
        while self.advance():
            yield self.event()
        if self._err is not None:
            raise self._err

    def __enter__(self):
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    # Wire framings.

    def _read_row(self) -> Dict[str, Any]:
        """Decode one row object; "doc" is kept as raw JSON text."""
        stream = self._stream
        row: Dict[str, Any] = {}
        stream.begin("{")
        while stream.more():
            key = stream.key()
            if key == "doc":
                row[key] = stream.raw()
            else:
                row[key] = stream.value()
        stream.end()
        return row

    def _parse_continuous(self) -> None:
        self._reset()
        if not self._stream.more():
            # Connection closed without a terminating row: a clean end.
            self._end = True
            return
        row = self._read_row()
        if _is_terminal(row):
            self._apply_terminal(row)
            self._end = True
            return
        self._apply_row(row)

    def _parse_poll(self) -> None:
        stream = self._stream
        if not self._started:
            self._started = True
            stream.begin("{")
            while True:
                if not stream.more():
                    raise FeedDecodeError('poll feed response has no "results" key')
                key = stream.key()
                if key == "results":
                    break
                logger.debug("Skipping %r feed key before results", key)
                stream.skip()
            stream.begin("[")

        self._reset()
        if stream.more():
            self._apply_row(self._read_row())
            return

        # End of results reached, decode trailing object keys.
        stream.end()
        self._end = True
        while stream.more():
            key = stream.key()
            if not self._apply_trailer(key):
                logger.debug("Skipping %r feed key", key)
                stream.skip()
        stream.end()


# ── _changes ──────────────────────────────────────────────────────────


class ChangesFeed(Feed):
    """Iterator for the _changes feed of a database.

    Fields after each successful advance():
      document_id    ID of the changed document ("" after the end)
      deleted        True when the change deleted the document
      sequence       update sequence of the change; after the end of a poll
                     feed (or a terminated continuous feed) this is last_seq
      changes        the document's leaf revisions, [{"rev": ...}, ...]
      document_body  raw JSON of the document, only with include_docs=true
      pending_count  remaining changes, set after the end of a poll feed
    """

    def __init__(self, response: httpx.Response, mode: str = POLL, database: Any = None):
        super().__init__(response, mode)
        self.database = database
        self.document_id = ""
        self.deleted = False
        self.sequence: Optional[Seq] = None
        self.changes: List[Dict[str, Any]] = []
        self.document_body: Optional[str] = None
        self.pending_count = 0

    @property
    def revision_list(self) -> List[str]:
        """Revision IDs of the current row, in feed order."""
        return [change["rev"] for change in self.changes]

    @property
    def document(self) -> Any:
        """The decoded document body, or None without include_docs."""
        return None if self.document_body is None else json.loads(self.document_body)

    def event(self) -> ChangeEvent:
        return ChangeEvent(
            document_id=self.document_id,
            deleted=self.deleted,
            sequence=self.sequence,
            revisions=tuple(self.revision_list),
            document_body=self.document_body,
        )

    def _reset(self) -> None:
        # "deleted" is omitted from rows when false.
        self.document_id, self.deleted, self.changes, self.document_body = "", False, [], None

    def _apply_row(self, row: Dict[str, Any]) -> None:
        self.sequence = _check_seq(row.get("seq"), "seq")
        self.document_id = _check_type(row.get("id"), "id", str, "")
        self.deleted = _check_type(row.get("deleted"), "deleted", bool, False)
        self.changes = self._decode_changes(row.get("changes"))
        doc = row.get("doc")
        self.document_body = None if doc in (None, "null") else doc

    def _apply_terminal(self, row: Dict[str, Any]) -> None:
        last_seq = row["last_seq"]
        if isinstance(last_seq, bool):
            # {"seq": s, "last_seq": true}
            if "seq" in row:
                self.sequence = _check_seq(row["seq"], "seq")
        else:
            # {"last_seq": s, "pending": n}
            self.sequence = _check_seq(last_seq, "last_seq")
        if "pending" in row:
            self.pending_count = _check_type(row["pending"], "pending", int, 0)

    def _apply_trailer(self, key: str) -> bool:
        if key == "last_seq":
            self.sequence = _check_seq(self._stream.value(), "last_seq")
            return True
        if key == "pending":
            self.pending_count = _check_type(self._stream.value(), "pending", int, 0)
            return True
        return False

    @staticmethod
    def _decode_changes(changes: Any) -> List[Dict[str, Any]]:
        if changes is None:
            return []
        if not isinstance(changes, list):
            raise FeedDecodeError(f"feed row key 'changes' has type {type(changes).__name__}, want list")
        for change in changes:
            if not isinstance(change, dict) or not isinstance(change.get("rev"), str):
                raise FeedDecodeError(f"malformed entry in 'changes': {change!r}")
        return changes


# ── _db_updates ───────────────────────────────────────────────────────


class DBUpdatesFeed(Feed):
    """Iterator for the _db_updates feed.

    Receives an event whenever a database is created, updated or deleted.
    Fields: database_name, event_type ("created" | "updated" | "deleted"),
    sequence (not sent by CouchDB 1.x), ok (deprecated, 1.x only). All
    fields are empty after the end of the feed.
    """

    def __init__(self, response: httpx.Response):
        super().__init__(response, CONTINUOUS)
        self.database_name = ""
        self.event_type = ""
        self.sequence: Optional[Seq] = None
        self.ok = False

    def event(self) -> DBUpdateEvent:
        return DBUpdateEvent(
            database_name=self.database_name,
            event_type=self.event_type,
            sequence=self.sequence,
            ok=self.ok,
        )

    def _reset(self) -> None:
        self.database_name, self.event_type, self.sequence, self.ok = "", "", None, False

    def _apply_row(self, row: Dict[str, Any]) -> None:
        self.database_name = _check_type(row.get("db_name"), "db_name", str, "")
        self.event_type = _check_type(row.get("type"), "type", str, "")
        self.sequence = _check_seq(row.get("seq"), "seq", optional=True)
        self.ok = _check_type(row.get("ok"), "ok", bool, False)

    def _apply_terminal(self, row: Dict[str, Any]) -> None:
        last_seq = row["last_seq"]
        if isinstance(last_seq, bool):
            if "seq" in row:
                self.sequence = _check_seq(row["seq"], "seq", optional=True)
        else:
            self.sequence = _check_seq(last_seq, "last_seq")
