"""Test helpers (small, reusable doubles).

Keep this file tiny and purpose-built: it exists to prevent test suites from
growing lots of one-off operation and transport doubles as coverage expands.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import json
from typing import Any

import httpx


@dataclass
class ScriptedOperation:
    """Callable that replays a script of results/exceptions, one per call.

    Once the script runs out, further calls return ``default``.
    """

    script: list[Any] = field(default_factory=list)
    default: Any = "ok"
    calls: int = 0

    def __call__(self) -> Any:
        self.calls += 1
        if not self.script:
            return self.default
        item = self.script.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item


@dataclass
class StatusResult:
    """Return value carrying an HTTP status, as some backends hand back."""

    status_code: int
    body: str = ""


@dataclass
class RecordingTransport:
    """httpx.MockTransport wrapper that records requests and replays responses."""

    responses: list[httpx.Response | Exception] = field(default_factory=list)
    requests: list[httpx.Request] = field(default_factory=list)

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self._handle)

    def _handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if not self.responses:
            return httpx.Response(500, json={"error": {"message": "script exhausted"}})
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    def json_body(self, index: int = -1) -> dict[str, Any]:
        return json.loads(self.requests[index].content)


def sse_body(*chunks: dict[str, Any], done: bool = True) -> bytes:
    """Encode chunks as a server-sent-events stream."""
    lines = [f"data: {json.dumps(chunk)}\n\n" for chunk in chunks]
    if done:
        lines.append("data: [DONE]\n\n")
    return "".join(lines).encode()
