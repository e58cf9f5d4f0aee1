"""
couch_http.py — CouchDB HTTP transport, server client and database handle

Only what the feeds need: authenticated requests with status mapping,
a streaming GET for feed bodies, and the two feed-opening calls.

    client = Client("http://127.0.0.1:5984/", auth=basic_auth("admin", "pw"))
    with client.db("db").changes({"feed": "continuous"}) as feed:
        while feed.advance():
            print(feed.document_id, feed.sequence)
        if feed.err() is not None:
            raise feed.err()

A Client (and every Database derived from it) may be shared between threads;
each feed it opens owns its own connection.
"""

from __future__ import annotations

import hashlib
import logging
from typing import Any, Dict, Generator, List, Mapping, Optional, Union
from urllib.parse import urlsplit, urlunsplit

import httpx

from config_loader import redact_headers
from couch_errors import NetworkError, ServerError
from couch_feeds import CONTINUOUS, POLL, ChangesFeed, DBUpdatesFeed
from couch_options import optpath

logger = logging.getLogger("couchfeed.http")

Options = Mapping[str, Any]

# "feed" option value → decoder mode
_CHANGES_FEED_MODES = {
    None: POLL,
    "normal": POLL,
    "longpoll": POLL,
    "continuous": CONTINUOUS,
}


# ── Auth ──────────────────────────────────────────────────────────────


def basic_auth(username: str, password: str) -> httpx.BasicAuth:
    return httpx.BasicAuth(username, password)


class ProxyAuth(httpx.Auth):
    """CouchDB proxy authentication.

    The token is only sent when a secret is configured; it is the hex SHA-1
    of secret + username, matching couch_httpd_auth's proxy handler.
    """

    def __init__(self, username: str, roles: List[str], secret: str = ""):
        self.username = username
        self.roles = ",".join(roles)
        self.token = ""
        if secret:
            self.token = hashlib.sha1((secret + username).encode("utf-8")).hexdigest()

    def auth_flow(self, request: httpx.Request) -> Generator[httpx.Request, httpx.Response, None]:
        request.headers["X-Auth-CouchDB-UserName"] = self.username
        request.headers["X-Auth-CouchDB-Roles"] = self.roles
        if self.token:
            request.headers["X-Auth-CouchDB-Token"] = self.token
        yield request


Auth = Union[httpx.Auth, None]


# ── Transport ─────────────────────────────────────────────────────────


class Transport:
    """Sends requests below a URL prefix and maps failures to CouchError."""

    def __init__(
        self,
        prefix: str,
        http_client: Optional[httpx.Client] = None,
        auth: Auth = None,
        timeout: Optional[httpx.Timeout] = None,
    ):
        self.prefix = prefix.rstrip("/")
        self._owns_client = http_client is None
        if http_client is None:
            http_client = httpx.Client(timeout=timeout or httpx.Timeout(5.0, read=None))
        self.http = http_client
        self.auth = auth

    def request(
        self,
        method: str,
        path: str,
        content: Optional[bytes] = None,
        stream: bool = False,
    ) -> httpx.Response:
        """Send a request. Status codes >= 400 raise ServerError.

        With stream=True the body is left unread; the caller must close the
        response.
        """
        headers = {}
        if content is not None:
            headers["content-type"] = "application/json"
        request = self.http.build_request(method, self.prefix + path, content=content, headers=headers)
        # httpx applies auth inside send(); keep the current value per request.
        auth = self.auth

        logger.debug(
            "%s %s headers=%s", method, request.url, redact_headers(dict(request.headers))
        )
        try:
            response = self.http.send(request, auth=auth, stream=True)
        except httpx.TimeoutException as e:
            raise NetworkError(f"{method} {request.url}: request timed out: {e}") from e
        except httpx.TransportError as e:
            raise NetworkError(f"{method} {request.url}: connection failed: {e}") from e

        if response.status_code >= 400:
            raise _parse_error(request, response)
        if not stream:
            try:
                response.read()
            except httpx.TransportError as e:
                raise NetworkError(f"{method} {request.url}: reading response failed: {e}") from e
            finally:
                response.close()
        return response

    def close(self) -> None:
        if self._owns_client:
            self.http.close()


def _parse_error(request: httpx.Request, response: httpx.Response) -> ServerError:
    """Build a ServerError from a failed response, closing it."""
    error = reason = ""
    try:
        if request.method != "HEAD":
            response.read()
            try:
                body = response.json()
            except ValueError:
                body = None
            if isinstance(body, dict):
                error = str(body.get("error") or "")
                reason = str(body.get("reason") or "")
    except httpx.TransportError as e:
        logger.debug("Couldn't read error body of %s %s: %s", request.method, request.url, e)
    finally:
        response.close()
    return ServerError(request.method, str(request.url), response.status_code, error, reason)


# ── Client ────────────────────────────────────────────────────────────


class Client:
    """A remote CouchDB server."""

    def __init__(
        self,
        url: str,
        http_client: Optional[httpx.Client] = None,
        auth: Auth = None,
        timeout: Optional[httpx.Timeout] = None,
    ):
        # Credentials, query and fragment are never part of the prefix.
        parts = urlsplit(url)
        netloc = parts.netloc.rpartition("@")[2]
        prefix = urlunsplit((parts.scheme, netloc, parts.path, "", ""))
        self._transport = Transport(prefix, http_client=http_client, auth=auth, timeout=timeout)

    @property
    def url(self) -> str:
        """URL prefix of the server, without trailing '/'."""
        return self._transport.prefix

    def set_auth(self, auth: Auth) -> None:
        """Set the authentication mechanism; None removes it.

        Credentials are only checked by the server on the next request.
        """
        self._transport.auth = auth

    def request(self, method: str, path: str, content: Optional[bytes] = None, stream: bool = False):
        return self._transport.request(method, path, content=content, stream=stream)

    def ping(self) -> None:
        """Check whether the server is alive (HEAD /)."""
        self.request("HEAD", "/")

    def all_dbs(self) -> List[str]:
        return self.request("GET", "/_all_dbs").json()

    def db(self, name: str) -> "Database":
        """Database handle. Its existence is not verified."""
        return Database(self, name)

    def db_updates(self, options: Optional[Options] = None) -> DBUpdatesFeed:
        """Open the _db_updates feed.

        The "feed" option is always set to "continuous".
        """
        opts: Dict[str, Any] = dict(options or {})
        opts["feed"] = "continuous"
        response = self.request("GET", optpath(opts, None, "_db_updates"), stream=True)
        logger.debug("Opened _db_updates feed")
        return DBUpdatesFeed(response)

    def close(self) -> None:
        self._transport.close()

    def __enter__(self) -> "Client":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


class Database:
    """A remote CouchDB database."""

    def __init__(self, client: Client, name: str):
        self.client = client
        self.name = name

    def __repr__(self) -> str:
        return f"Database({self.client.url!r}, {self.name!r})"

    def changes(self, options: Optional[Options] = None) -> ChangesFeed:
        """Open the _changes feed of the database.

        The default feed mode is "normal", which retrieves the changes up to
        now and then ends. Set "feed" to "continuous" for a feed that stays
        open; "longpoll" waits for at least one change. Other options are
        passed through as query parameters (e.g. include_docs, since,
        heartbeat).
        """
        opts = dict(options or {})
        feed_option = opts.get("feed")
        if not isinstance(feed_option, (str, type(None))) or feed_option not in _CHANGES_FEED_MODES:
            raise ValueError(f'unsupported value for option "feed": {feed_option!r}')
        mode = _CHANGES_FEED_MODES[feed_option]

        response = self.client.request("GET", optpath(opts, None, self.name, "_changes"), stream=True)
        logger.debug("Opened _changes feed of %s in %s mode", self.name, mode)
        return ChangesFeed(response, mode, database=self)
