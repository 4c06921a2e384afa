"""Rendering engine detection and selection.

Three engines are known, probed fresh on every request:
  - external-whole-page: the wkhtmltoimage binary
  - native-composition:  ImageMagick through the Wand binding
  - raster-fallback:     Pillow, text only
"""

import importlib
import logging
import os
import shutil
import subprocess
from typing import Any, Callable, Dict, List, Optional, Sequence

from pydantic import BaseModel, Field

from errors import EngineUnavailableError, NoEnginesAvailableError, UnknownEngineError

logger = logging.getLogger("html2png_service.engines")

EXTERNAL_WHOLE_PAGE = "external-whole-page"
NATIVE_COMPOSITION = "native-composition"
RASTER_FALLBACK = "raster-fallback"

ENGINE_PRIORITY = (EXTERNAL_WHOLE_PAGE, NATIVE_COMPOSITION, RASTER_FALLBACK)
AUTO_ENGINE = "auto"

ENGINE_ALIASES = {
    "wkhtmltoimage": EXTERNAL_WHOLE_PAGE,
    "imagemagick": NATIVE_COMPOSITION,
    "imagick": NATIVE_COMPOSITION,
    "wand": NATIVE_COMPOSITION,
    "gd": RASTER_FALLBACK,
    "pillow": RASTER_FALLBACK,
}

WKHTMLTOIMAGE_CANDIDATES = (
    "wkhtmltoimage",
    "/usr/bin/wkhtmltoimage",
    "/usr/local/bin/wkhtmltoimage",
    "/opt/homebrew/bin/wkhtmltoimage",
    "/usr/bin/wkhtmltoimage.sh",
)
PROBE_TIMEOUT = 10.0


class EngineAvailability(BaseModel):
    engine: str
    available: bool
    path: Optional[str] = None
    version: Optional[str] = None
    reason: Optional[str] = None
    error: Optional[str] = None
    info: Dict[str, Any] = Field(default_factory=dict)


class DetectionReport(BaseModel):
    engines: Dict[str, EngineAvailability]
    best_available: Optional[str] = None
    available: bool = False

    def is_available(self, engine: str) -> bool:
        record = self.engines.get(engine)
        return bool(record and record.available)

    def available_engines(self) -> List[str]:
        return [name for name in ENGINE_PRIORITY if self.is_available(name)]

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


class EngineSelection(BaseModel):
    candidates: List[str]
    forced: bool = False
    requested: Optional[str] = None

    @property
    def forced_engine(self) -> Optional[str]:
        return self.candidates[0] if self.forced else None


class CapabilityProbe:
    """Checks whether one engine can run in the current environment."""

    engine: str = ""

    def probe(self) -> EngineAvailability:
        raise NotImplementedError


class ExternalBinaryProbe(CapabilityProbe):
    engine = EXTERNAL_WHOLE_PAGE

    def __init__(
        self,
        candidates: Optional[Sequence[str]] = None,
        *,
        version_flag: str = "--version",
        timeout: float = PROBE_TIMEOUT,
        which: Callable[[str], Optional[str]] = shutil.which,
        runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
    ):
        if candidates is None:
            override = os.getenv("WKHTMLTOIMAGE_BINARY")
            candidates = ((override,) if override else ()) + WKHTMLTOIMAGE_CANDIDATES
        self.candidates = list(candidates)
        self.version_flag = version_flag
        self.timeout = timeout
        self.which = which
        self.runner = runner

    def probe(self) -> EngineAvailability:
        broken: List[str] = []
        for candidate in self.candidates:
            resolved = self.which(candidate)
            if not resolved:
                continue
            resolved = os.path.abspath(resolved)
            try:
                proc = self.runner(
                    [resolved, self.version_flag],
                    stdout=subprocess.PIPE,
                    stderr=subprocess.STDOUT,
                    timeout=self.timeout,
                )
            except (OSError, subprocess.SubprocessError) as exc:
                broken.append(f"{resolved}: {exc}")
                continue
            output = (proc.stdout or b"").decode("utf-8", errors="ignore").strip()
            if proc.returncode != 0:
                broken.append(f"{resolved}: exit code {proc.returncode} {output}".strip())
                continue
            version = output.splitlines()[0] if output else "unknown"
            return EngineAvailability(engine=self.engine, available=True, path=resolved, version=version)

        if broken:
            return EngineAvailability(
                engine=self.engine,
                available=False,
                reason="Binary found but not executable",
                error="; ".join(broken),
            )
        return EngineAvailability(
            engine=self.engine,
            available=False,
            reason="Binary not found",
            info={"searched": self.candidates, "note": "Install wkhtmltoimage to enable this rendering engine"},
        )


class NativeLibraryProbe(CapabilityProbe):
    engine = NATIVE_COMPOSITION

    def __init__(self, importer: Callable[[str], Any] = importlib.import_module):
        self.importer = importer

    def probe(self) -> EngineAvailability:
        try:
            wand_image = self.importer("wand.image")
        except ImportError as exc:
            return EngineAvailability(
                engine=self.engine,
                available=False,
                reason="ImageMagick binding not loaded",
                error=str(exc),
            )
        try:
            with wand_image.Image(width=1, height=1) as probe_image:
                probe_image.format = "png"
            wand_version = self.importer("wand.version")
        except Exception as exc:  # noqa: BLE001
            return EngineAvailability(
                engine=self.engine,
                available=False,
                reason="ImageMagick binding loaded but cannot instantiate",
                error=f"{type(exc).__name__}: {exc}",
            )
        return EngineAvailability(
            engine=self.engine,
            available=True,
            version=str(getattr(wand_version, "MAGICK_VERSION", "unknown")),
            info={"binding_version": str(getattr(wand_version, "VERSION", "unknown"))},
        )


class RasterLibraryProbe(CapabilityProbe):
    engine = RASTER_FALLBACK

    def __init__(self, importer: Callable[[str], Any] = importlib.import_module):
        self.importer = importer

    def probe(self) -> EngineAvailability:
        try:
            pil = self.importer("PIL")
            pil_image = self.importer("PIL.Image")
            pil_features = self.importer("PIL.features")
        except ImportError as exc:
            return EngineAvailability(
                engine=self.engine,
                available=False,
                reason="Pillow not loaded",
                error=str(exc),
            )
        try:
            pil_image.new("RGBA", (1, 1), (255, 255, 255, 0))
            freetype = bool(pil_features.check("freetype2"))
        except Exception as exc:  # noqa: BLE001
            return EngineAvailability(
                engine=self.engine,
                available=False,
                reason="Pillow loaded but cannot create images",
                error=f"{type(exc).__name__}: {exc}",
            )
        return EngineAvailability(
            engine=self.engine,
            available=True,
            version=str(getattr(pil, "__version__", "unknown")),
            info={"freetype": freetype, "note": "Pillow is the baseline fallback renderer"},
        )


def default_probes() -> List[CapabilityProbe]:
    return [ExternalBinaryProbe(), NativeLibraryProbe(), RasterLibraryProbe()]


class EngineDetector:
    def __init__(self, probes: Optional[Sequence[CapabilityProbe]] = None):
        self.probes = list(probes) if probes is not None else default_probes()

    def detect(self) -> DetectionReport:
        engines: Dict[str, EngineAvailability] = {}
        for probe in self.probes:
            try:
                record = probe.probe()
            except Exception as exc:  # noqa: BLE001 - detection must never fail the request
                logger.exception("Probe for %s raised", probe.engine)
                record = EngineAvailability(
                    engine=probe.engine,
                    available=False,
                    reason="Probe raised an unexpected error",
                    error=f"{type(exc).__name__}: {exc}",
                )
            engines[record.engine] = record

        for name in ENGINE_PRIORITY:
            engines.setdefault(name, EngineAvailability(engine=name, available=False, reason="No probe configured"))

        best = next((name for name in ENGINE_PRIORITY if engines[name].available), None)
        return DetectionReport(engines=engines, best_available=best, available=best is not None)


def normalize_engine_name(requested: Optional[str]) -> Optional[str]:
    if requested is None:
        return None
    candidate = requested.strip().lower()
    if not candidate or candidate == AUTO_ENGINE:
        return None
    if candidate in ENGINE_PRIORITY:
        return candidate
    if candidate in ENGINE_ALIASES:
        return ENGINE_ALIASES[candidate]
    raise UnknownEngineError(
        f"Unknown rendering engine '{requested}'",
        {
            "requested_engine": requested,
            "known_engines": list(ENGINE_PRIORITY),
            "aliases": dict(ENGINE_ALIASES),
        },
    )


def select_engines(requested: Optional[str], report: DetectionReport) -> EngineSelection:
    engine = normalize_engine_name(requested)

    if engine is None:
        candidates = report.available_engines()
        if not candidates:
            raise NoEnginesAvailableError(
                "No rendering libraries available",
                {"detected_libraries": report.to_dict()},
            )
        return EngineSelection(candidates=candidates, forced=False, requested=requested)

    if not report.is_available(engine):
        raise EngineUnavailableError(
            f"Requested rendering engine '{engine}' is not available",
            {
                "requested_engine": engine,
                "unavailable": [engine],
                "available_engines": report.available_engines(),
                "detected_libraries": report.to_dict(),
            },
        )
    return EngineSelection(candidates=[engine], forced=True, requested=requested)


def log_engine_selection(selection: EngineSelection, report: DetectionReport) -> None:
    selected = selection.candidates[0] if selection.candidates else None
    if selection.forced:
        reason = f"Forced by request ({selection.requested})"
    elif selected:
        reason = f"Selected based on priority {ENGINE_PRIORITY.index(selected) + 1} - best available engine"
    else:
        reason = "No rendering libraries available - conversion will fail"

    lines = [f"Selected engine: {selected.upper() if selected else 'NONE'}", f"  Reason: {reason}"]
    if len(selection.candidates) > 1:
        lines.append(f"  Fallback order: {' > '.join(selection.candidates)}")
    lines.append("  Detection results:")
    for name in ENGINE_PRIORITY:
        record = report.engines.get(name)
        if record is None:
            continue
        lines.append(f"    - {name.upper()}: {'AVAILABLE' if record.available else 'UNAVAILABLE'}")
        if record.version:
            lines.append(f"      Version: {record.version}")
        if record.path:
            lines.append(f"      Path: {record.path}")
        if record.reason:
            lines.append(f"      Reason: {record.reason}")
        if record.error:
            lines.append(f"      Error: {record.error}")
    logger.info("\n".join(lines))
