import os
import subprocess
from pathlib import Path

import pytest
from PIL import Image

from engines import EXTERNAL_WHOLE_PAGE, NATIVE_COMPOSITION, RASTER_FALLBACK, DetectionReport, EngineAvailability
from errors import DeadlineExceededError
from renderers import (
    build_html_document,
    build_renderers,
    extract_text,
    parse_basic_css,
    render_with_imagemagick,
    render_with_pillow,
    render_with_wkhtmltoimage,
)
from request_context import RequestContext


def test_build_html_document_keeps_block_order_and_forces_transparency():
    document = build_html_document(["<p>one</p>", "<p>two</p>"], "body { background: red; }")

    assert document.index("<p>one</p>") < document.index("<p>two</p>")
    assert "<style>body { background: red; }</style>" in document
    assert document.rindex("background: transparent !important") > document.index("background: red")


def test_extract_text_breaks_blocks_and_unescapes():
    html = "<h1>Title</h1><p>Fish &amp; chips<br>today</p><script>alert(1)</script><div>  spaced   out </div>"

    assert extract_text(html) == "Title\nFish & chips\ntoday\nspaced out"


def test_extract_text_ignores_attribute_values():
    assert extract_text('<div title="a>b">Hello</div><p data-x=">>">World<!-- hidden --></p>') == "Hello\nWorld"


def test_extract_text_wraps_long_lines():
    lines = extract_text("<p>" + "word " * 40 + "</p>").split("\n")

    assert len(lines) > 1
    assert all(len(line) <= 80 for line in lines)


def test_extract_text_of_markup_only_is_empty():
    assert extract_text("<div><img src='x.png'></div>") == ""


def test_parse_basic_css():
    styles = parse_basic_css("h1 { font-size: 12pt; color: #ff0000; background-color: #00ff00; }")

    assert styles.font_size == 15
    assert styles.color == "#ff0000"
    assert styles.background == "#00ff00"


def test_parse_basic_css_ignores_background_color_for_text_color():
    styles = parse_basic_css("body { background-color: blue; }")

    assert styles.color == "#000000"
    assert styles.font_size == 16


def test_parse_basic_css_em_units():
    assert parse_basic_css("p { font-size: 2em }").font_size == 32


def test_pillow_renders_transparent_png(tmp_path):
    output = tmp_path / "out.png"

    outcome = render_with_pillow(["<p>Hello world</p>"], "p { color: #123456; font-size: 20px; }", str(output))

    assert outcome.success is True
    assert outcome.engine == RASTER_FALLBACK
    assert outcome.mime_type == "image/png"
    assert outcome.file_size == output.stat().st_size
    with Image.open(output) as image:
        assert image.mode == "RGBA"
        assert image.size == (outcome.width, outcome.height)
        assert image.getpixel((0, 0))[3] == 0


def test_pillow_without_text_fails_cleanly(tmp_path):
    output = tmp_path / "out.png"

    outcome = render_with_pillow(["<div></div>"], None, str(output))

    assert outcome.success is False
    assert outcome.error == "HTML contains no renderable text"
    assert not output.exists()


def test_pillow_respects_cancelled_context(tmp_path):
    ctx = RequestContext()
    ctx.cancel()

    with pytest.raises(DeadlineExceededError):
        render_with_pillow(["<p>x</p>"], None, str(tmp_path / "out.png"), ctx)


def _fake_wkhtmltoimage(calls, opaque=True):
    def run(cmd, **kwargs):
        calls.append({"cmd": cmd, "kwargs": kwargs, "html": Path(cmd[-2]).read_text(encoding="utf-8")})
        image = Image.new("RGB", (60, 30), (255, 255, 255))
        image.paste((0, 0, 0), (10, 10, 20, 20))
        if not opaque:
            image = image.convert("RGBA")
            image.putpixel((0, 0), (255, 255, 255, 0))
        image.save(cmd[-1], format="PNG")
        return subprocess.CompletedProcess(cmd, 0, b"", b"")

    return run


def test_wkhtmltoimage_command_and_background_knockout(tmp_path):
    calls = []
    output = tmp_path / "page.png"

    outcome = render_with_wkhtmltoimage(
        ["<p>Hi</p>"],
        "p { color: red; }",
        str(output),
        binary="/usr/bin/wkhtmltoimage",
        runner=_fake_wkhtmltoimage(calls),
    )

    assert outcome.success is True
    assert outcome.engine == EXTERNAL_WHOLE_PAGE
    assert (outcome.width, outcome.height) == (60, 30)
    assert outcome.detail["background_knocked_out"] is True
    cmd = calls[0]["cmd"]
    assert cmd[:6] == ["/usr/bin/wkhtmltoimage", "--format", "png", "--transparent", "--width", "800"]
    assert cmd[-1] == str(output)
    assert calls[0]["kwargs"]["check"] is True
    assert "p { color: red; }" in calls[0]["html"]
    assert not os.path.exists(cmd[-2])
    with Image.open(output) as image:
        assert image.getpixel((0, 0))[3] == 0
        assert image.getpixel((15, 15))[3] == 255


def test_wkhtmltoimage_keeps_existing_transparency(tmp_path):
    outcome = render_with_wkhtmltoimage(
        ["<p>Hi</p>"], None, str(tmp_path / "page.png"), runner=_fake_wkhtmltoimage([], opaque=False)
    )

    assert outcome.detail["background_knocked_out"] is False


def test_wkhtmltoimage_failure_reports_output(tmp_path):
    html_paths = []

    def failing(cmd, **kwargs):
        html_paths.append(cmd[-2])
        with open(cmd[-1], "wb") as handle:
            handle.write(b"half")
        raise subprocess.CalledProcessError(1, cmd, output=b"", stderr=b"QXcbConnection: Could not connect")

    output = tmp_path / "page.png"
    outcome = render_with_wkhtmltoimage(["<p>Hi</p>"], None, str(output), runner=failing)

    assert outcome.success is False
    assert outcome.error == "wkhtmltoimage execution failed"
    assert outcome.detail["return_code"] == 1
    assert "QXcbConnection" in outcome.detail["output"]
    assert "--transparent" in outcome.detail["command"]
    assert not output.exists()
    assert not os.path.exists(html_paths[0])


def test_wkhtmltoimage_timeout_is_bounded_by_deadline(tmp_path):
    seen = {}

    def slow(cmd, **kwargs):
        seen["timeout"] = kwargs["timeout"]
        raise subprocess.TimeoutExpired(cmd, kwargs["timeout"])

    ctx = RequestContext(5.0)
    outcome = render_with_wkhtmltoimage(["<p>Hi</p>"], None, str(tmp_path / "page.png"), ctx, runner=slow)

    assert outcome.success is False
    assert outcome.detail["reason"] == "timeout"
    assert seen["timeout"] <= 5.0


def test_wkhtmltoimage_missing_output_fails(tmp_path):
    def silent(cmd, **kwargs):
        return subprocess.CompletedProcess(cmd, 0, b"", b"")

    outcome = render_with_wkhtmltoimage(["<p>Hi</p>"], None, str(tmp_path / "page.png"), runner=silent)

    assert outcome.success is False
    assert outcome.error == "Output file was not created"


def test_imagemagick_renders_transparent_png(tmp_path):
    pytest.importorskip("wand.image")
    output = tmp_path / "magick.png"

    outcome = render_with_imagemagick(["<p>Hello</p>"], "p { color: #333333; }", str(output))

    if not outcome.success:
        pytest.skip(f"ImageMagick present but unusable here: {outcome.detail}")
    assert outcome.engine == NATIVE_COMPOSITION
    with Image.open(output) as image:
        assert image.convert("RGBA").getpixel((0, 0))[3] == 0


def test_imagemagick_without_text_fails(tmp_path):
    outcome = render_with_imagemagick(["<br>"], None, str(tmp_path / "magick.png"))

    assert outcome.success is False


def test_build_renderers_uses_detected_binary_path():
    report = DetectionReport(
        engines={
            EXTERNAL_WHOLE_PAGE: EngineAvailability(
                engine=EXTERNAL_WHOLE_PAGE, available=True, path="/opt/wk/bin/wkhtmltoimage"
            )
        }
    )

    renderers = build_renderers(report, width=1024)

    assert set(renderers) == {EXTERNAL_WHOLE_PAGE, NATIVE_COMPOSITION, RASTER_FALLBACK}
    assert renderers[EXTERNAL_WHOLE_PAGE].keywords["binary"] == "/opt/wk/bin/wkhtmltoimage"
    assert renderers[EXTERNAL_WHOLE_PAGE].keywords["width"] == 1024
