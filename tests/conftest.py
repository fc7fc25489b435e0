"""
Shared fixtures: temp SQLite store, controllable clocks, a fake aiohttp session
and a fake publish pipeline.
"""

import io
import os
import sys
from pathlib import Path

import pytest
from PIL import Image

# repo root holds the modules
sys.path.insert(0, str(Path(__file__).parent.parent))

from _ledger import Ledger
from _publish import PublishedLink, FetchError
from _store import ConfigStore


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeResponse:
    def __init__(self, status=200, body=b"", json_data=None, json_exc=None, enter_exc=None):
        self.status = status
        self.body = body
        self.json_data = json_data
        self.json_exc = json_exc
        self.enter_exc = enter_exc

    async def read(self):
        return self.body

    async def json(self, content_type="application/json"):
        if self.json_exc is not None:
            raise self.json_exc
        return self.json_data

    async def __aenter__(self):
        if self.enter_exc is not None:
            raise self.enter_exc
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False


class FakeHttp:
    """Stands in for aiohttp.ClientSession: one canned response per verb."""

    def __init__(self):
        self.get_response = FakeResponse(body=b"")
        self.post_response = FakeResponse(json_data=[{"src": "/file/abc123"}])
        self.head_response = FakeResponse(status=200)
        self.calls = []

    def get(self, url, **kwargs):
        self.calls.append(("GET", url, kwargs))
        return self.get_response

    def post(self, url, **kwargs):
        self.calls.append(("POST", url, kwargs))
        return self.post_response

    def head(self, url, **kwargs):
        self.calls.append(("HEAD", url, kwargs))
        return self.head_response

    def verbs(self):
        return [c[0] for c in self.calls]


class FakePipeline:
    """Records publishes; fails when `fail` is set. Preview files go to work_dir."""

    def __init__(self, ledger, work_dir, origin="https://telegra.ph"):
        self.ledger = ledger
        self.work_dir = work_dir
        self.origin = origin
        self.fail = None
        self.preview_fail = False
        self.published = []
        self.previews = []

    async def prepare_preview(self, file_id):
        if self.preview_fail:
            raise FetchError("no preview")
        path = os.path.join(self.work_dir, f"preview-{file_id}-{len(self.previews)}.jpg")
        with open(path, "wb") as f:
            f.write(b"jpeg")
        self.previews.append(path)
        return path

    async def publish(self, request):
        self.published.append(request)
        if self.fail is not None:
            raise self.fail
        link = f"{self.origin}/file/{request.file_id}"
        total = self.ledger.record_publish(request.owner_id, link)
        return PublishedLink(link, request.owner_id, total)


def make_image_bytes(size=(64, 48), mode="RGB", fmt="PNG", color=(200, 30, 30)):
    buf = io.BytesIO()
    if mode == "RGBA":
        color = color + (128,)
    Image.new(mode, size, color).save(buf, format=fmt)
    return buf.getvalue()


@pytest.fixture(scope="session")
def oversized_png():
    """A tiny file that decodes to 15000x15000 pixels, past Pillow's bomb limit."""
    buf = io.BytesIO()
    Image.new("1", (15000, 15000)).save(buf, format="PNG")
    return buf.getvalue()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(tmp_path):
    s = ConfigStore(str(tmp_path / "state.db"), channel="mychannel")
    s.load()
    return s


@pytest.fixture
def ledger(store, clock):
    return Ledger(store, clock=clock)


@pytest.fixture
def http():
    return FakeHttp()


@pytest.fixture
def work_dir(tmp_path):
    d = tmp_path / "artifacts"
    d.mkdir()
    return str(d)


@pytest.fixture
def fake_pipeline(ledger, work_dir):
    return FakePipeline(ledger, work_dir)


@pytest.fixture
def image_bytes():
    return make_image_bytes()

