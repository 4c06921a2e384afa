"""End-to-end conversion pipeline: CSS, fingerprint, detection, selection, render."""

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from pydantic import BaseModel, Field

from content_hash import content_fingerprint
from css_cache import CssFetchCache
from engines import EngineDetector, log_engine_selection, normalize_engine_name, select_engines
from errors import InputValidationError
from render_cache import RenderAttempt, RenderCache
from renderers import build_renderers
from request_context import RequestContext

logger = logging.getLogger("html2png_service.converter")


class ConversionResult(BaseModel):
    engine: Optional[str] = None
    cached: bool
    output_path: str
    file_size: int
    width: Optional[int] = None
    height: Optional[int] = None
    mime_type: Optional[str] = None
    fingerprint: str
    forced: bool = False
    candidates: List[str] = Field(default_factory=list)
    css: Optional[Dict[str, Any]] = None
    attempts: List[RenderAttempt] = Field(default_factory=list)


class HtmlToPngConverter:
    def __init__(
        self,
        output_dir: Path,
        css_cache: CssFetchCache,
        detector: Optional[EngineDetector] = None,
        renderer_options: Optional[Dict[str, Any]] = None,
    ):
        self.output_dir = Path(output_dir)
        self.css_cache = css_cache
        self.detector = detector or EngineDetector()
        self.renderer_options = dict(renderer_options or {})

    def convert(
        self,
        html_blocks: Sequence[str],
        css_url: Optional[str] = None,
        engine: Optional[str] = None,
        ctx: Optional[RequestContext] = None,
    ) -> ConversionResult:
        ctx = ctx or RequestContext()
        blocks = list(html_blocks)
        if not blocks:
            raise InputValidationError("html_blocks must contain at least one block")
        # Reject unknown engine names before any network traffic.
        normalize_engine_name(engine)

        css_text = None
        css_summary = None
        if css_url:
            ctx.check("css")
            resolution = self.css_cache.resolve(css_url, ctx)
            css_text = resolution.text
            css_summary = resolution.summary()
            css_summary["url"] = css_url
            logger.info("request %s: CSS %s resolved from %s", ctx.request_id, css_url, resolution.source)

        fingerprint = content_fingerprint(blocks, css_text)

        ctx.check("detection")
        report = self.detector.detect()
        selection = select_engines(engine, report)
        log_engine_selection(selection, report)

        renderers = build_renderers(report, **self.renderer_options)
        cache = RenderCache(self.output_dir, renderers)
        artifact = cache.get_or_render(fingerprint, blocks, css_text, selection, ctx)

        logger.info(
            "request %s: %s %s (engine=%s, %s bytes)",
            ctx.request_id,
            "cache hit" if artifact.cached else "rendered",
            Path(artifact.output_path).name,
            artifact.engine,
            artifact.file_size,
        )
        return ConversionResult(
            engine=artifact.engine,
            cached=artifact.cached,
            output_path=artifact.output_path,
            file_size=artifact.file_size,
            width=artifact.width,
            height=artifact.height,
            mime_type=artifact.mime_type,
            fingerprint=fingerprint,
            forced=selection.forced,
            candidates=selection.candidates,
            css=css_summary,
            attempts=artifact.attempts,
        )
