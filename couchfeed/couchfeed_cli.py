#!/usr/bin/env python3
"""
couchfeed_cli.py — Log CouchDB _changes and _db_updates feeds

Usage:
  couchfeed --db <name> [-f] [--include-docs] [--since <seq>]
  couchfeed --dbupdates
  common:  [--server <url>] [--config <path>] [--verbose]

Without -f the feed is read in "normal" (poll) mode and the tool exits after
the last change; with -f it follows the "continuous" feed until the server
closes it. Credentials come from the config file (.couchfeed.yaml), usually
as {env:COUCHDB_PASSWORD}, or from user:password@ in the server URL.

Exit codes:
  0 = feed ended cleanly
  1 = server returned an error (4xx/5xx)
  2 = network/timeout error
  3 = feed could not be decoded
  4 = invalid usage or config
"""

import logging
import sys
from typing import Any, Dict, List, Optional, TextIO
from urllib.parse import unquote, urlsplit

import httpx

from config_loader import load_config, redact_string
from couch_errors import CouchError, FeedDecodeError, NetworkError, ServerError
from couch_feeds import POLL, ChangesFeed, DBUpdatesFeed, Feed
from couch_http import Client, ProxyAuth, basic_auth

logger = logging.getLogger("couchfeed.cli")

EXIT_OK = 0
EXIT_SERVER_ERROR = 1
EXIT_NETWORK_ERROR = 2
EXIT_DECODE_ERROR = 3
EXIT_USAGE = 4

USAGE = """Usage:
  couchfeed --db <name> [-f] [--include-docs] [--since <seq>] [--server <url>] [--config <path>] [--verbose]
  couchfeed --dbupdates [--server <url>] [--config <path>] [--verbose]"""

# flag → (option name, takes a value)
_FLAGS = {
    "--server": ("server", True),
    "--db": ("db", True),
    "--dbupdates": ("dbupdates", False),
    "-f": ("follow", False),
    "--follow": ("follow", False),
    "--include-docs": ("include_docs", False),
    "--since": ("since", True),
    "--config": ("config", True),
    "--verbose": ("verbose", False),
    "-v": ("verbose", False),
}


class UsageError(ValueError):
    pass


# === Argument Parsing ===

def parse_args(args: List[str]) -> Dict[str, Any]:
    opts: Dict[str, Any] = {
        "server": None,
        "db": None,
        "dbupdates": False,
        "follow": False,
        "include_docs": False,
        "since": None,
        "config": None,
        "verbose": False,
    }
    idx = 0
    while idx < len(args):
        arg = args[idx]
        if arg not in _FLAGS:
            raise UsageError(f"unknown argument: {arg}")
        name, takes_value = _FLAGS[arg]
        if takes_value:
            if idx + 1 >= len(args):
                raise UsageError(f"{arg} requires a value")
            opts[name] = args[idx + 1]
            idx += 2
        else:
            opts[name] = True
            idx += 1

    if not opts["dbupdates"] and not opts["db"]:
        raise UsageError("--db or --dbupdates is required")
    if opts["dbupdates"] and opts["db"]:
        raise UsageError("--db and --dbupdates are mutually exclusive")
    return opts


# === Client Setup ===

def build_auth(config: Dict[str, Any], server: str) -> Optional[httpx.Auth]:
    """Resolve auth from config, falling back to user:password@ in the server URL."""
    auth = config.get("auth") or {}
    proxy = auth.get("proxy")
    if proxy:
        if not proxy.get("username"):
            raise ValueError("auth.proxy.username is required")
        return ProxyAuth(proxy["username"], list(proxy.get("roles") or []), proxy.get("secret") or "")
    if auth.get("username"):
        return basic_auth(auth["username"], auth.get("password") or "")

    parts = urlsplit(server)
    if parts.username:
        return basic_auth(unquote(parts.username), unquote(parts.password or ""))
    return None


def build_timeout(config: Dict[str, Any]) -> httpx.Timeout:
    timeout = config.get("timeout") or {}
    connect_ms = timeout.get("connect_ms") or 5000
    read_ms = timeout.get("read_ms")
    return httpx.Timeout(
        connect_ms / 1000.0,
        read=read_ms / 1000.0 if read_ms is not None else None,
    )


def build_client(config: Dict[str, Any], http_client: Optional[httpx.Client] = None) -> Client:
    server = config["server"]
    return Client(
        server,
        http_client=http_client,
        auth=build_auth(config, server),
        timeout=build_timeout(config),
    )


# === Feed Output ===

def show_change(feed: ChangesFeed, out: TextIO) -> None:
    if feed.deleted:
        print(f"deleted: {feed.document_id} {feed.sequence}", file=out)
    else:
        print(f"changed: {feed.document_id} {feed.sequence}", file=out)
    if feed.document_body is not None:
        print(f"  doc: {feed.document_body}", file=out)


def show_db_update(feed: DBUpdatesFeed, out: TextIO) -> None:
    print(f"{feed.event_type} db {feed.database_name} seq {feed.sequence}", file=out)


def run_feed(
    opts: Dict[str, Any],
    config: Dict[str, Any],
    out: Optional[TextIO] = None,
    http_client: Optional[httpx.Client] = None,
) -> int:
    """Open the requested feed, print every event, return the exit code."""
    out = out or sys.stdout
    feed_options: Dict[str, Any] = {"feed": "continuous" if opts["follow"] else "normal"}
    if opts["include_docs"]:
        feed_options["include_docs"] = True
    if opts["since"] is not None:
        feed_options["since"] = opts["since"]

    with build_client(config, http_client=http_client) as client:
        try:
            if opts["dbupdates"]:
                feed: Feed = client.db_updates()
                show = show_db_update
            else:
                feed = client.db(opts["db"]).changes(feed_options)
                show = show_change
        except CouchError as e:
            return _report(e, "can't open feed")

        with feed:
            while feed.advance():
                show(feed, out)
            if feed.err() is not None:
                return _report(feed.err(), "feed error")

        if isinstance(feed, ChangesFeed) and feed.mode == POLL:
            print(f"end seq {feed.sequence} pending {feed.pending_count}", file=out)
    return EXIT_OK


def _report(err: CouchError, context: str) -> int:
    print(f"ERROR: {context}: {redact_string(str(err))}", file=sys.stderr)
    if isinstance(err, ServerError):
        return EXIT_SERVER_ERROR
    if isinstance(err, NetworkError):
        return EXIT_NETWORK_ERROR
    if isinstance(err, FeedDecodeError):
        return EXIT_DECODE_ERROR
    return EXIT_SERVER_ERROR


# === Main Entry Point ===

def main(argv: Optional[List[str]] = None) -> None:
    args = sys.argv[1:] if argv is None else argv

    if not args or args[0] in ("-h", "--help"):
        print(USAGE, file=sys.stderr)
        sys.exit(EXIT_USAGE)

    try:
        opts = parse_args(args)
    except UsageError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        print(USAGE, file=sys.stderr)
        sys.exit(EXIT_USAGE)

    logging.basicConfig(
        level=logging.DEBUG if opts["verbose"] else logging.WARNING,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
        stream=sys.stderr,
    )

    overrides = {"server": opts["server"]} if opts["server"] else {}
    try:
        config = load_config(opts["config"], overrides)
        code = run_feed(opts, config)
    except ValueError as e:
        print(f"ERROR: {redact_string(str(e))}", file=sys.stderr)
        sys.exit(EXIT_USAGE)
    sys.exit(code)


if __name__ == "__main__":
    main()
