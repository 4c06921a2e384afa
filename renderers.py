"""Rendering adapters.

Every adapter takes (html_blocks, css_text, output_path, ctx) and returns a
RenderOutcome. Adapters never raise for rendering problems; they report a
failure and leave nothing behind at ``output_path``.
"""

import functools
import logging
import os
import re
import subprocess
import tempfile
import textwrap
from typing import Any, Callable, Dict, List, Optional, Sequence

from bs4 import BeautifulSoup
from PIL import Image, ImageColor, ImageDraw, ImageFont
from pydantic import BaseModel, Field

from engines import EXTERNAL_WHOLE_PAGE, NATIVE_COMPOSITION, RASTER_FALLBACK, DetectionReport
from request_context import RequestContext
from transparent_background import describe_png, ensure_transparent_png, save_png

logger = logging.getLogger("html2png_service.renderers")

DEFAULT_RENDER_WIDTH = 800
DEFAULT_RENDER_TIMEOUT = 60.0
TEXT_PADDING = 10
WRAP_WIDTH = 80
LINE_SPACING = 4
IMAGEMAGICK_PNG_QUALITY = 60  # zlib level 6, adaptive filtering
FONT_CANDIDATES = ("DejaVuSans.ttf", "Arial.ttf", "LiberationSans-Regular.ttf")


class RenderOutcome(BaseModel):
    success: bool
    engine: str
    width: Optional[int] = None
    height: Optional[int] = None
    file_size: Optional[int] = None
    mime_type: Optional[str] = None
    error: Optional[str] = None
    detail: Dict[str, Any] = Field(default_factory=dict)


class CssStyles(BaseModel):
    font_size: int = 16
    color: str = "#000000"
    background: str = "transparent"


Renderer = Callable[..., RenderOutcome]

BLOCK_ELEMENTS = (
    "p", "div", "h1", "h2", "h3", "h4", "h5", "h6", "li", "tr", "blockquote", "pre",
    "section", "article", "header", "footer", "ul", "ol", "table",
)
NON_TEXT_ELEMENTS = ("style", "script", "head", "title")
_INLINE_SPACE = re.compile(r"[ \t\f\v\xa0]+")

_FONT_SIZE = re.compile(r"font-size\s*:\s*(\d+(?:\.\d+)?)\s*(px|pt|em|rem)?", re.IGNORECASE)
_COLOR = re.compile(r"(?<![-\w])color\s*:\s*(#[0-9a-fA-F]{3,8}|rgba?\([^)]*\)|[a-zA-Z]+)", re.IGNORECASE)
_BACKGROUND = re.compile(
    r"background(?:-color)?\s*:\s*(#[0-9a-fA-F]{3,8}|rgba?\([^)]*\)|[a-zA-Z]+)",
    re.IGNORECASE,
)


def build_html_document(html_blocks: Sequence[str], css_text: Optional[str], *, padding: int = 0) -> str:
    parts = [
        "<!DOCTYPE html>\n<html>\n<head>\n<meta charset=\"UTF-8\">\n",
        f"<style>\nbody {{ margin: 0; padding: {padding}px; background: transparent; }}\n</style>\n",
    ]
    if css_text:
        parts.append(f"<style>{css_text}</style>\n")
    # Appended last so user CSS cannot paint an opaque page background.
    parts.append("<style>html, body { background: transparent !important; }</style>\n")
    parts.append(f"</head>\n<body>{''.join(html_blocks)}</body>\n</html>\n")
    return "".join(parts)


def extract_text(html: str, wrap_width: int = WRAP_WIDTH) -> str:
    soup = BeautifulSoup(html, "html.parser")
    for element in soup.find_all(NON_TEXT_ELEMENTS):
        element.extract()
    for element in soup.find_all("br"):
        element.replace_with("\n")
    for element in soup.find_all(BLOCK_ELEMENTS):
        element.append("\n")
    text = soup.get_text()

    lines: List[str] = []
    for raw_line in text.splitlines():
        line = _INLINE_SPACE.sub(" ", raw_line).strip()
        if not line:
            continue
        lines.extend(textwrap.wrap(line, wrap_width, break_long_words=True) or [line])
    return "\n".join(lines)


def parse_basic_css(css_text: Optional[str]) -> CssStyles:
    styles = CssStyles()
    if not css_text:
        return styles

    match = _FONT_SIZE.search(css_text)
    if match:
        size = float(match.group(1))
        unit = (match.group(2) or "px").lower()
        if unit == "pt":
            size *= 1.33
        elif unit in {"em", "rem"}:
            size *= 16
        styles.font_size = max(6, min(200, int(size)))

    match = _COLOR.search(css_text)
    if match:
        styles.color = match.group(1)

    match = _BACKGROUND.search(css_text)
    if match:
        styles.background = match.group(1)
    return styles


def _rgba(color: str) -> tuple:
    try:
        return ImageColor.getcolor(color, "RGBA")
    except ValueError:
        logger.warning("Unsupported CSS color %r; using black", color)
        return (0, 0, 0, 255)


def _remove_output(output_path: str) -> None:
    if os.path.exists(output_path):
        os.unlink(output_path)


def _failure(engine: str, output_path: str, error: str, /, **detail: Any) -> RenderOutcome:
    _remove_output(output_path)
    return RenderOutcome(success=False, engine=engine, error=error, detail=detail)


def _success(engine: str, output_path: str, **detail: Any) -> RenderOutcome:
    if not os.path.exists(output_path):
        return _failure(engine, output_path, "Output file was not created", output_path=output_path)
    try:
        width, height, mime = describe_png(output_path)
    except ValueError as exc:
        return _failure(engine, output_path, "Generated file is not a valid image", message=str(exc))
    return RenderOutcome(
        success=True,
        engine=engine,
        width=width,
        height=height,
        file_size=os.path.getsize(output_path),
        mime_type=mime,
        detail=detail,
    )


def render_with_wkhtmltoimage(
    html_blocks: Sequence[str],
    css_text: Optional[str],
    output_path: str,
    ctx: Optional[RequestContext] = None,
    *,
    binary: str = "wkhtmltoimage",
    width: int = DEFAULT_RENDER_WIDTH,
    timeout: float = DEFAULT_RENDER_TIMEOUT,
    runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
) -> RenderOutcome:
    engine = EXTERNAL_WHOLE_PAGE
    effective_timeout = ctx.bound_timeout(timeout, stage=engine) if ctx else timeout

    fd, html_path = tempfile.mkstemp(prefix="wkhtml_", suffix=".html")
    cmd = [binary, "--format", "png", "--transparent", "--width", str(width), html_path, output_path]
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(build_html_document(html_blocks, css_text))

        logger.info("Running wkhtmltoimage: %s", " ".join(cmd))
        proc = runner(cmd, check=True, stdout=subprocess.PIPE, stderr=subprocess.PIPE, timeout=effective_timeout)
        if proc.stderr:
            logger.debug("wkhtmltoimage stderr:\n%s", proc.stderr.decode("utf-8", errors="ignore"))
    except subprocess.CalledProcessError as exc:
        output = b"\n".join(part for part in (exc.stdout, exc.stderr) if part).decode("utf-8", errors="ignore")
        logger.error("wkhtmltoimage failed (returncode=%s): %s", exc.returncode, output)
        return _failure(
            engine,
            output_path,
            "wkhtmltoimage execution failed",
            return_code=exc.returncode,
            output=output,
            command=" ".join(cmd),
        )
    except subprocess.TimeoutExpired:
        logger.error("wkhtmltoimage timed out after %.1fs", effective_timeout)
        return _failure(
            engine,
            output_path,
            "wkhtmltoimage timed out",
            reason="timeout",
            timeout_seconds=effective_timeout,
            command=" ".join(cmd),
        )
    except OSError as exc:
        return _failure(engine, output_path, "wkhtmltoimage could not be started", message=str(exc), command=" ".join(cmd))
    finally:
        if os.path.exists(html_path):
            os.unlink(html_path)

    if not os.path.exists(output_path):
        return _failure(engine, output_path, "Output file was not created", output_path=output_path)
    try:
        knocked_out = ensure_transparent_png(output_path)
    except (OSError, ValueError) as exc:
        return _failure(engine, output_path, "Generated file is not a valid image", message=str(exc))
    return _success(engine, output_path, command_used=" ".join(cmd), background_knocked_out=knocked_out)


def render_with_imagemagick(
    html_blocks: Sequence[str],
    css_text: Optional[str],
    output_path: str,
    ctx: Optional[RequestContext] = None,
) -> RenderOutcome:
    engine = NATIVE_COMPOSITION
    if ctx:
        ctx.check(engine)
    try:
        from wand.color import Color
        from wand.drawing import Drawing
        from wand.image import Image as WandImage
    except ImportError as exc:
        return _failure(engine, output_path, "ImageMagick is not available", reason=str(exc))

    text = extract_text("".join(html_blocks))
    if not text:
        return _failure(engine, output_path, "HTML contains no renderable text")
    styles = parse_basic_css(css_text)

    try:
        with Drawing() as draw:
            draw.fill_color = Color(styles.color)
            draw.font_size = styles.font_size
            draw.gravity = "north_west"
            with WandImage(width=1, height=1) as scratch:
                metrics = draw.get_font_metrics(scratch, text, multiline=True)
            canvas_width = int(metrics.text_width) + TEXT_PADDING * 2
            canvas_height = int(metrics.text_height) + TEXT_PADDING * 2
            draw.text(TEXT_PADDING, TEXT_PADDING, text)

            with WandImage(width=canvas_width, height=canvas_height, background=Color("transparent")) as image:
                draw(image)
                image.trim(fuzz=0)
                image.reset_coords()
                image.alpha_channel = "activate"
                image.border(Color("transparent"), TEXT_PADDING, TEXT_PADDING)
                image.background_color = Color("transparent")
                image.format = "png"
                image.compression_quality = IMAGEMAGICK_PNG_QUALITY
                image.options["png:compression-level"] = "6"
                image.options["png:compression-strategy"] = "filtered"
                image.save(filename=output_path)
    except Exception as exc:  # noqa: BLE001
        logger.warning("ImageMagick rendering failed: %s", exc)
        return _failure(
            engine,
            output_path,
            "ImageMagick rendering failed",
            exception=type(exc).__name__,
            message=str(exc),
        )
    return _success(engine, output_path, text_lines=text.count("\n") + 1)


def _load_font(size: int):
    for name in FONT_CANDIDATES:
        try:
            return ImageFont.truetype(name, size)
        except OSError:
            continue
    return ImageFont.load_default(size=size)


def render_with_pillow(
    html_blocks: Sequence[str],
    css_text: Optional[str],
    output_path: str,
    ctx: Optional[RequestContext] = None,
) -> RenderOutcome:
    engine = RASTER_FALLBACK
    if ctx:
        ctx.check(engine)

    text = extract_text("".join(html_blocks))
    if not text:
        return _failure(engine, output_path, "HTML contains no renderable text")
    styles = parse_basic_css(css_text)
    font = _load_font(styles.font_size)

    try:
        measure = ImageDraw.Draw(Image.new("RGBA", (1, 1)))
        left, top, right, bottom = measure.multiline_textbbox((0, 0), text, font=font, spacing=LINE_SPACING)
        width = max(1, int(right - left)) + TEXT_PADDING * 2
        height = max(1, int(bottom - top)) + TEXT_PADDING * 2

        image = Image.new("RGBA", (width, height), (255, 255, 255, 0))
        draw = ImageDraw.Draw(image)
        draw.multiline_text(
            (TEXT_PADDING - left, TEXT_PADDING - top),
            text,
            font=font,
            fill=_rgba(styles.color),
            spacing=LINE_SPACING,
        )
        save_png(image, output_path)
    except (OSError, ValueError) as exc:
        return _failure(engine, output_path, "Pillow rendering failed", exception=type(exc).__name__, message=str(exc))

    preview = text[:50] + ("..." if len(text) > 50 else "")
    return _success(engine, output_path, text_lines=text.count("\n") + 1, text_preview=preview)


def build_renderers(
    report: Optional[DetectionReport] = None,
    *,
    width: int = DEFAULT_RENDER_WIDTH,
    timeout: float = DEFAULT_RENDER_TIMEOUT,
) -> Dict[str, Renderer]:
    binary = "wkhtmltoimage"
    if report is not None:
        record = report.engines.get(EXTERNAL_WHOLE_PAGE)
        if record is not None and record.path:
            binary = record.path
    return {
        EXTERNAL_WHOLE_PAGE: functools.partial(render_with_wkhtmltoimage, binary=binary, width=width, timeout=timeout),
        NATIVE_COMPOSITION: render_with_imagemagick,
        RASTER_FALLBACK: render_with_pillow,
    }
