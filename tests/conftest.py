import os
from collections import deque
from typing import Dict, List, Optional

import pytest
from PIL import Image

from engines import ENGINE_PRIORITY, CapabilityProbe, EngineAvailability, EngineDetector
from renderers import RenderOutcome
from transparent_background import save_png


class FakeProbe(CapabilityProbe):
    def __init__(self, engine: str, available: bool = True, **fields):
        self.engine = engine
        self.available = available
        self.fields = fields
        self.calls = 0

    def probe(self) -> EngineAvailability:
        self.calls += 1
        if not self.available:
            self.fields.setdefault("reason", "Not installed")
        return EngineAvailability(engine=self.engine, available=self.available, **self.fields)


def make_detector(*available: str) -> EngineDetector:
    return EngineDetector([FakeProbe(name, name in available) for name in ENGINE_PRIORITY])


class FakeResponse:
    def __init__(self, status_code: int = 200, body: bytes = b"", headers: Optional[Dict[str, str]] = None):
        self.status_code = status_code
        self.body = body
        self.headers = dict(headers or {})
        self.closed = False

    def iter_content(self, chunk_size: int = 1):
        for start in range(0, len(self.body), chunk_size):
            yield self.body[start : start + chunk_size]

    def close(self):
        self.closed = True


class FakeSession:
    """Replays queued responses (or exceptions) for HEAD and GET."""

    def __init__(self):
        self.queues = {"head": deque(), "get": deque()}
        self.calls: List[Dict] = []

    def queue(self, method: str, outcome):
        self.queues[method].append(outcome)
        return self

    def _next(self, method: str, url: str, **kwargs):
        self.calls.append({"method": method, "url": url, **kwargs})
        if not self.queues[method]:
            raise AssertionError(f"unexpected {method.upper()} {url}")
        outcome = self.queues[method].popleft()
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def head(self, url, **kwargs):
        return self._next("head", url, **kwargs)

    def get(self, url, **kwargs):
        return self._next("get", url, **kwargs)

    def methods(self) -> List[str]:
        return [call["method"] for call in self.calls]


class SpyRenderer:
    """Stands in for an adapter; writes a small PNG or reports a failure."""

    def __init__(self, engine: str, succeed: bool = True, size=(40, 20), error: str = "boom", write_partial=False):
        self.engine = engine
        self.succeed = succeed
        self.size = size
        self.error = error
        self.write_partial = write_partial
        self.calls: List[Dict] = []

    def __call__(self, html_blocks, css_text, output_path, ctx=None):
        self.calls.append({"html_blocks": list(html_blocks), "css_text": css_text, "output_path": output_path})
        if not self.succeed:
            if self.write_partial:
                with open(output_path, "wb") as handle:
                    handle.write(b"partial")
            return RenderOutcome(success=False, engine=self.engine, error=self.error, detail={"spy": True})
        save_png(Image.new("RGBA", self.size, (0, 0, 0, 0)), output_path)
        return RenderOutcome(
            success=True,
            engine=self.engine,
            width=self.size[0],
            height=self.size[1],
            file_size=os.path.getsize(output_path),
            mime_type="image/png",
        )


@pytest.fixture
def fake_session():
    return FakeSession()
