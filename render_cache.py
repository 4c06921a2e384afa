"""Content-addressed PNG cache with sequential engine fallback.

Output layout under ``output_dir``:
  - {fingerprint}.png            auto-selected engine
  - {fingerprint}_{engine}.png   engine forced by the caller
  - {stem}.render.json           engine that produced the PNG (optional)

The PNG's existence is the only cache-hit signal.
"""

import json
import logging
import os
import re
import uuid
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence

from pydantic import BaseModel, Field

from content_hash import is_fingerprint
from engines import EngineSelection
from errors import DeadlineExceededError, InternalInvariantError, RenderFailedError
from file_utils import atomic_write
from renderers import RenderOutcome, Renderer
from request_context import RequestContext
from transparent_background import describe_png

logger = logging.getLogger("html2png_service.render_cache")

ENGINE_TAG_PATTERN = re.compile(r"^[a-z][a-z-]*$")
RENDER_SIDECAR_SUFFIX = ".render.json"


class RenderAttempt(BaseModel):
    engine: str
    error: str
    detail: Dict[str, Any] = Field(default_factory=dict)


class RenderArtifact(BaseModel):
    output_path: str
    file_size: int
    cached: bool
    engine: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None
    mime_type: Optional[str] = None
    attempts: List[RenderAttempt] = Field(default_factory=list)


def _discard(path: Path) -> None:
    if path.exists():
        path.unlink()


class RenderCache:
    def __init__(self, output_dir: Path, renderers: Mapping[str, Renderer], *, record_engine: bool = True):
        self.output_dir = Path(output_dir)
        self.renderers = dict(renderers)
        self.record_engine = record_engine

    def artifact_path(self, fingerprint: str, engine: Optional[str] = None) -> Path:
        if not is_fingerprint(fingerprint):
            raise InternalInvariantError("Invalid content fingerprint", {"fingerprint": str(fingerprint)[:64]})
        if engine is None:
            return self.output_dir / f"{fingerprint}.png"
        if not ENGINE_TAG_PATTERN.match(engine):
            raise InternalInvariantError("Invalid engine tag", {"engine": engine})
        return self.output_dir / f"{fingerprint}_{engine}.png"

    @staticmethod
    def sidecar_path(artifact: Path) -> Path:
        return artifact.with_name(artifact.stem + RENDER_SIDECAR_SUFFIX)

    def lookup(self, path: Path) -> Optional[RenderArtifact]:
        if not path.is_file():
            return None
        artifact = RenderArtifact(output_path=str(path), file_size=path.stat().st_size, cached=True)
        try:
            artifact.width, artifact.height, artifact.mime_type = describe_png(str(path))
        except ValueError as exc:
            logger.warning("Cached artifact %s could not be inspected: %s", path, exc)
        if self.record_engine:
            artifact.engine = self._read_sidecar(path)
        return artifact

    def _read_sidecar(self, path: Path) -> Optional[str]:
        sidecar = self.sidecar_path(path)
        if not sidecar.is_file():
            return None
        try:
            return json.loads(sidecar.read_text(encoding="utf-8")).get("engine")
        except (OSError, ValueError, AttributeError) as exc:
            logger.warning("Ignoring unreadable render sidecar %s: %s", sidecar, exc)
            return None

    def _write_sidecar(self, path: Path, outcome: RenderOutcome) -> None:
        if not self.record_engine:
            return
        payload = {
            "engine": outcome.engine,
            "width": outcome.width,
            "height": outcome.height,
            "mime_type": outcome.mime_type,
        }
        atomic_write(self.sidecar_path(path), json.dumps(payload, indent=2).encode("utf-8"))

    def get_or_render(
        self,
        fingerprint: str,
        html_blocks: Sequence[str],
        css_text: Optional[str],
        selection: EngineSelection,
        ctx: Optional[RequestContext] = None,
    ) -> RenderArtifact:
        ctx = ctx or RequestContext()
        dest = self.artifact_path(fingerprint, selection.forced_engine)

        cached = self.lookup(dest)
        if cached is not None:
            logger.info("Cache hit for %s", dest.name)
            return cached

        self.output_dir.mkdir(parents=True, exist_ok=True)
        attempts: List[RenderAttempt] = []
        for index, engine in enumerate(selection.candidates):
            if ctx.expired():
                raise DeadlineExceededError(
                    "Request deadline exceeded during rendering",
                    {
                        "stage": "render",
                        "attempts": [attempt.model_dump() for attempt in attempts],
                        "remaining_candidates": list(selection.candidates[index:]),
                    },
                )

            renderer = self.renderers.get(engine)
            if renderer is None:
                attempts.append(RenderAttempt(engine=engine, error="No renderer registered for engine"))
                continue

            tmp_path = dest.with_name(f".{dest.stem}.{uuid.uuid4().hex}.tmp.png")
            try:
                outcome = renderer(list(html_blocks), css_text, str(tmp_path), ctx)
            except DeadlineExceededError as exc:
                _discard(tmp_path)
                exc.detail.setdefault("attempts", [attempt.model_dump() for attempt in attempts])
                raise
            except Exception as exc:  # noqa: BLE001
                logger.exception("Renderer for %s raised", engine)
                outcome = RenderOutcome(
                    success=False,
                    engine=engine,
                    error="Renderer raised an unexpected error",
                    detail={"exception": type(exc).__name__, "message": str(exc)},
                )

            if outcome.success and tmp_path.is_file():
                os.replace(tmp_path, dest)
                try:
                    self._write_sidecar(dest, outcome)
                except OSError as exc:
                    logger.warning("Could not write render sidecar for %s: %s", dest.name, exc)
                logger.info(
                    "Rendered %s with %s (%sx%s, %s bytes)",
                    dest.name,
                    engine,
                    outcome.width,
                    outcome.height,
                    outcome.file_size,
                )
                return RenderArtifact(
                    output_path=str(dest),
                    file_size=dest.stat().st_size,
                    cached=False,
                    engine=engine,
                    width=outcome.width,
                    height=outcome.height,
                    mime_type=outcome.mime_type,
                    attempts=attempts,
                )

            _discard(tmp_path)
            error = outcome.error or "Renderer reported success but wrote no file"
            attempts.append(RenderAttempt(engine=engine, error=error, detail=outcome.detail))
            logger.warning("Engine %s failed for %s: %s", engine, dest.name, error)

        message = "Rendering failed" if selection.forced else "All rendering engines failed"
        raise RenderFailedError(
            message,
            {
                "forced": selection.forced,
                "engines_attempted": [attempt.engine for attempt in attempts],
                "attempts": [attempt.model_dump() for attempt in attempts],
            },
        )
