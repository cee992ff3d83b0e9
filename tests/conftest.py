"""Session-wide network egress guard.

Unit tests must never reach the mail provider or the LLM endpoint. HTTP
clients may only be constructed from test code (where transports are
mocked), and sockets may only open towards the configured database.
"""

import inspect
import json
import os
import socket
from pathlib import Path

import httpx
import pytest
from sqlalchemy.engine import make_url
from sqlalchemy.exc import ArgumentError

VIOLATIONS: list[dict] = []
REPORT = Path("artifacts") / "egress-violations.json"
ALLOWED_CALLERS = ("/tests/",)


def _called_from_tests() -> bool:
    for frame in inspect.stack():
        filename = (frame.filename or "").replace("\\", "/")
        if any(marker in filename for marker in ALLOWED_CALLERS):
            return True
    return False


def _database_endpoint() -> tuple[str | None, int | None]:
    raw = os.environ.get("CHASER_DB_URL") or os.environ.get("DATABASE_URL") or ""
    if not raw:
        return None, None
    try:
        url = make_url(raw)
    except ArgumentError:
        return None, None
    if not url.host:
        return None, None
    return url.host, url.port or 5432


def _blocked(fn: str, target: str) -> RuntimeError:
    VIOLATIONS.append({"fn": fn, "target": target})
    return RuntimeError(f"Egress blocked: {fn} to {target}")


@pytest.fixture(autouse=True, scope="session")
def egress_guard():
    db_host, db_port = _database_endpoint()

    real_getaddrinfo = socket.getaddrinfo
    real_create_connection = socket.create_connection
    real_httpx_init = httpx.Client.__init__

    def guard_getaddrinfo(host, *args, **kwargs):
        if (db_host and host == db_host) or _called_from_tests():
            return real_getaddrinfo(host, *args, **kwargs)
        raise _blocked("getaddrinfo", str(host))

    def guard_create_connection(address, *args, **kwargs):
        host, port = (address[0], address[1]) if isinstance(address, tuple) else (None, None)
        if (db_host and host == db_host and port == db_port) or _called_from_tests():
            return real_create_connection(address, *args, **kwargs)
        raise _blocked("create_connection", str(address))

    def guard_httpx_init(self, *args, **kwargs):
        if not _called_from_tests():
            raise _blocked("httpx.Client", str(kwargs.get("base_url", "")))
        return real_httpx_init(self, *args, **kwargs)

    socket.getaddrinfo = guard_getaddrinfo  # type: ignore[assignment]
    socket.create_connection = guard_create_connection  # type: ignore[assignment]
    httpx.Client.__init__ = guard_httpx_init  # type: ignore[assignment]

    yield

    socket.getaddrinfo = real_getaddrinfo  # type: ignore[assignment]
    socket.create_connection = real_create_connection  # type: ignore[assignment]
    httpx.Client.__init__ = real_httpx_init  # type: ignore[assignment]

    if VIOLATIONS:
        REPORT.parent.mkdir(parents=True, exist_ok=True)
        REPORT.write_text(json.dumps(VIOLATIONS, indent=2))
