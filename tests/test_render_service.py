import hashlib
import os
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient
from PIL import Image

import converter
import render_service
from conftest import FakeResponse, SpyRenderer, make_detector
from css_cache import CssFetchCache
from engines import ENGINE_PRIORITY, RASTER_FALLBACK
from render_service import app


def _md5(text: str) -> str:
    return hashlib.md5(text.encode("utf-8")).hexdigest()


@pytest.fixture
def client():
    return TestClient(app)


@pytest.fixture
def service(monkeypatch, tmp_path, fake_session):
    output_dir = tmp_path / "html2png"
    state = SimpleNamespace(available=[RASTER_FALLBACK], output_dir=output_dir, session=fake_session)

    monkeypatch.setattr(render_service, "OUTPUT_DIR", str(output_dir))
    monkeypatch.setattr(render_service, "get_detector", lambda: make_detector(*state.available))
    css_cache = CssFetchCache(tmp_path / "css_cache", session=fake_session)
    monkeypatch.setattr(render_service, "get_css_cache", lambda: css_cache)
    return state


def _pngs(output_dir):
    if not output_dir.exists():
        return []
    return sorted(name for name in os.listdir(output_dir) if name.endswith(".png"))


def test_auto_render_with_only_raster_fallback(service, client):
    response = client.post("/convert", json={"html_blocks": ["<div>Hello</div>"], "css_url": None, "engine": "auto"})

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["job_id"]
    data = body["data"]
    assert data["engine"] == RASTER_FALLBACK
    assert data["cached"] is False
    expected = service.output_dir / f"{_md5('<div>Hello</div>')}.png"
    assert data["output_path"] == str(expected)
    assert data["image_url"] == f"/images/{expected.name}"
    with Image.open(expected) as image:
        assert image.mode == "RGBA"
        assert image.getpixel((0, 0))[3] == 0


def test_repeat_request_is_served_from_cache(service, client):
    payload = {"html_blocks": ["<div>Hello</div>"], "engine": "auto"}
    first = client.post("/convert", json=payload).json()["data"]
    mtime = os.stat(first["output_path"]).st_mtime_ns

    second = client.post("/convert", json=payload).json()["data"]

    assert second["cached"] is True
    assert second["output_path"] == first["output_path"]
    assert second["file_size"] == first["file_size"]
    assert second["engine"] == RASTER_FALLBACK
    assert os.stat(second["output_path"]).st_mtime_ns == mtime


def test_different_css_produces_distinct_artifacts(service, client):
    service.session.queue("get", FakeResponse(200, b"body{color:red}"))
    service.session.queue("get", FakeResponse(200, b"body{color:blue}"))

    red = client.post("/convert", json={"html_blocks": ["<div>X</div>"], "css_url": "https://cdn.example.com/red.css"})
    blue = client.post("/convert", json={"html_blocks": ["<div>X</div>"], "css_url": "https://cdn.example.com/blue.css"})

    assert red.status_code == blue.status_code == 200
    red_data, blue_data = red.json()["data"], blue.json()["data"]
    assert red_data["fingerprint"] == _md5("<div>X</div>body{color:red}")
    assert blue_data["fingerprint"] == _md5("<div>X</div>body{color:blue}")
    assert red_data["output_path"] != blue_data["output_path"]
    assert len(_pngs(service.output_dir)) == 2


def test_forced_engine_unavailable_is_reported(service, client):
    service.available = []

    response = client.post("/convert", json={"html_blocks": ["<div>Hello</div>"], "engine": "raster-fallback"})

    assert response.status_code == 503
    detail = response.json()["detail"]
    assert detail["category"] == "engine_unavailable"
    assert detail["data"]["requested_engine"] == RASTER_FALLBACK
    assert detail["data"]["unavailable"] == [RASTER_FALLBACK]
    assert _pngs(service.output_dir) == []


def test_form_data_with_repeated_blocks(service, client):
    response = client.post("/convert", data={"html_blocks[]": ["<p>a</p>", "<p>b</p>"], "engine": "gd"})

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["fingerprint"] == _md5("<p>a</p><p>b</p>")
    assert data["forced"] is True
    assert data["output_path"].endswith("_raster-fallback.png")


def test_single_string_block_is_accepted(service, client):
    response = client.post("/convert", json={"html_blocks": "<p>solo</p>"})

    assert response.status_code == 200
    assert response.json()["data"]["fingerprint"] == _md5("<p>solo</p>")


def test_blocks_are_sanitized_before_hashing(service, client):
    response = client.post("/convert", json={"html_blocks": ["<p>x</p><script>steal()</script>"]})

    assert response.status_code == 200
    assert response.json()["data"]["fingerprint"] == _md5("<p>x</p>")


@pytest.mark.parametrize(
    "payload",
    [
        {},
        {"html_blocks": []},
        {"html_blocks": ["   "]},
        {"html_blocks": [42]},
        {"html_blocks": ["<p>x</p>"], "css_url": "ftp://example.com/a.css"},
        {"html_blocks": ["<p>x</p>"], "css_url": "not a url"},
    ],
)
def test_invalid_payloads_are_rejected(service, client, payload):
    response = client.post("/convert", json=payload)

    assert response.status_code == 400
    detail = response.json()["detail"]
    assert detail["category"] == "invalid_input"
    assert detail["job_id"]


def test_malformed_json_is_rejected(service, client):
    response = client.post("/convert", content=b"{oops", headers={"Content-Type": "application/json"})

    assert response.status_code == 400
    assert response.json()["detail"]["message"] == "Invalid JSON"


def test_block_over_size_limit(service, client, monkeypatch):
    monkeypatch.setattr(render_service, "MAX_HTML_BLOCK_BYTES", 16)

    response = client.post("/convert", json={"html_blocks": ["<p>" + "x" * 32 + "</p>"]})

    assert response.status_code == 413
    assert response.json()["detail"]["data"]["invalid_index"] == 0


def test_total_over_size_limit(service, client, monkeypatch):
    monkeypatch.setattr(render_service, "MAX_TOTAL_INPUT_BYTES", 20)

    response = client.post("/convert", json={"html_blocks": ["<p>123456</p>", "<p>abcdef</p>"]})

    assert response.status_code == 413
    assert response.json()["detail"]["data"]["max_size"] == 20


def test_script_only_block_is_rejected(service, client):
    response = client.post("/convert", json={"html_blocks": ["<p>ok</p>", "<script>alert(1)</script>"]})

    assert response.status_code == 400
    detail = response.json()["detail"]
    assert detail["data"]["invalid_index"] == 1
    assert "dangerous" in detail["message"]


def test_unknown_engine(service, client):
    response = client.post("/convert", json={"html_blocks": ["<p>x</p>"], "engine": "chromium"})

    assert response.status_code == 400
    assert response.json()["detail"]["category"] == "unknown_engine"


def test_no_engines_available(service, client):
    service.available = []

    response = client.post("/convert", json={"html_blocks": ["<p>x</p>"]})

    assert response.status_code == 503
    assert response.json()["detail"]["category"] == "no_engines_available"


def test_css_upstream_failure(service, client):
    service.session.queue("get", FakeResponse(404))

    response = client.post("/convert", json={"html_blocks": ["<p>x</p>"], "css_url": "https://cdn.example.com/gone.css"})

    assert response.status_code == 502
    detail = response.json()["detail"]
    assert detail["category"] == "css_fetch_error"
    assert detail["data"]["reason"] == "http_status"
    assert _pngs(service.output_dir) == []


def test_all_engines_failing(service, client, monkeypatch):
    service.available = list(ENGINE_PRIORITY)
    failing = {name: SpyRenderer(name, succeed=False, error=f"{name} failed") for name in ENGINE_PRIORITY}
    monkeypatch.setattr(converter, "build_renderers", lambda report, **options: failing)

    response = client.post("/convert", json={"html_blocks": ["<p>x</p>"]})

    assert response.status_code == 500
    detail = response.json()["detail"]
    assert detail["category"] == "render_failed"
    assert [attempt["engine"] for attempt in detail["data"]["attempts"]] == list(ENGINE_PRIORITY)


def test_deadline_exceeded(service, client, monkeypatch):
    monkeypatch.setattr(render_service, "REQUEST_TIMEOUT", 1e-9)

    response = client.post("/convert", json={"html_blocks": ["<p>x</p>"]})

    assert response.status_code == 504
    assert response.json()["detail"]["category"] == "deadline_exceeded"


def test_engines_endpoint(service, client):
    response = client.get("/engines")

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["best_available"] == RASTER_FALLBACK
    assert data["priority"] == list(ENGINE_PRIORITY)
    assert data["aliases"]["gd"] == RASTER_FALLBACK


def test_image_endpoint_serves_rendered_png(service, client):
    data = client.post("/convert", json={"html_blocks": ["<p>x</p>"]}).json()["data"]

    response = client.get(data["image_url"])

    assert response.status_code == 200
    assert response.headers["content-type"] == "image/png"
    assert response.content[:8] == b"\x89PNG\r\n\x1a\n"


def test_image_endpoint_rejects_bad_names(service, client):
    assert client.get("/images/passwd.png").status_code == 400
    assert client.get(f"/images/{'0' * 32}.png").status_code == 404


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_root_lists_usage(client):
    body = client.get("/").json()
    assert body["submit_endpoint"] == "/convert"
    assert body["engines"] == list(ENGINE_PRIORITY)
