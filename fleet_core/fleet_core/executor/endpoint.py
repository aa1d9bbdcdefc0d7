"""Connection-endpoint normalisation.

Every endpoint handed to the migration tool or the policy verifier carries a
short connect timeout and a server-side statement timeout, so a single
unreachable or wedged database cannot stall a fleet-wide run.  Values the
caller already set are left untouched.

The query string is edited pair by pair rather than decoded and re-encoded:
libpq percent-decodes values but reads ``+`` literally, so a generic
form-decoding round trip would corrupt credentials such as ``password=a+b``.
"""

from __future__ import annotations

import re
from typing import Any
from urllib.parse import quote, unquote

# ``-c name=value`` pairs inside a libpq ``options`` string.
_OPTION_RE = re.compile(r"-c\s*([A-Za-z_.]+)=(\S+)")


def _split_query(query: str) -> list[tuple[str, str]]:
    """Return ``(decoded_key, raw_pair)`` for every non-empty ``&``-separated pair."""
    return [(unquote(pair.partition("=")[0]), pair) for pair in query.split("&") if pair]


def normalize_endpoint(
    url: str,
    *,
    connect_timeout: int = 5,
    statement_timeout_ms: int = 60_000,
) -> str:
    """Return *url* with ``connect_timeout`` and ``statement_timeout`` injected.

    ``statement_timeout`` travels in the libpq ``options`` parameter
    (``-c statement_timeout=N``); an existing ``options`` value that does not
    mention it is extended rather than replaced.
    """
    base, _, query = url.partition("?")
    params = _split_query(query)
    keys = {key for key, _ in params}
    pairs = [pair for _, pair in params]

    if "connect_timeout" not in keys:
        pairs.append(f"connect_timeout={connect_timeout}")

    wanted = f"-c statement_timeout={statement_timeout_ms}"
    if "options" not in keys:
        pairs.append(f"options={quote(wanted, safe='')}")
    else:
        for index, (key, pair) in enumerate(params):
            value = unquote(pair.partition("=")[2])
            if key == "options" and "statement_timeout" not in value:
                pairs[index] = f"options={quote(f'{value} {wanted}'.strip(), safe='')}"

    return f"{base}?{'&'.join(pairs)}"


def to_async_engine_args(url: str) -> tuple[str, dict[str, Any]]:
    """Translate a normalised libpq URL into an asyncpg engine URL plus ``connect_args``.

    asyncpg does not understand libpq's ``connect_timeout``/``options``/
    ``sslmode`` query parameters, so they are lifted out of the URL and
    expressed as driver arguments instead.  Remaining parameters are
    re-encoded strictly (``+`` becomes ``%2B``) because SQLAlchemy's URL
    parser decodes a bare ``+`` as a space.
    """
    base, _, query = url.partition("?")
    scheme, sep, rest = base.partition("://")
    if sep and scheme in ("postgres", "postgresql"):
        base = f"postgresql+asyncpg://{rest}"

    connect_args: dict[str, Any] = {}
    server_settings: dict[str, str] = {}
    kept: list[str] = []
    for key, pair in _split_query(query):
        value = unquote(pair.partition("=")[2])
        if key == "connect_timeout":
            connect_args["timeout"] = float(value)
        elif key == "options":
            for setting, setting_value in _OPTION_RE.findall(value):
                server_settings[setting] = setting_value
        elif key == "sslmode":
            connect_args["ssl"] = value
        else:
            kept.append(f"{quote(key, safe='')}={quote(value, safe='')}")
    if server_settings:
        connect_args["server_settings"] = server_settings

    engine_url = f"{base}?{'&'.join(kept)}" if kept else base
    return engine_url, connect_args
