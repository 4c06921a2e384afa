import logging
import os
import re
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import FileResponse
from pydantic import BaseModel, Field, ValidationError, field_validator

from converter import HtmlToPngConverter
from css_cache import CSS_CACHE_TTL, MAX_CSS_BYTES, CssFetchCache
from engines import ENGINE_ALIASES, ENGINE_PRIORITY, EngineDetector
from errors import ConversionError
from request_context import RequestContext
from sanitize import sanitize_html, sanitize_log_data

repo_dir = os.path.dirname(os.path.abspath(__file__))

env_path = os.path.join(repo_dir, ".env")
venv_env_path = os.path.join(repo_dir, ".venv", ".env")
load_dotenv(dotenv_path=venv_env_path, override=False)
load_dotenv(dotenv_path=env_path, override=True)


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


OUTPUT_DIR = os.getenv("HTML2PNG_OUTPUT_DIR") or os.path.join(repo_dir, "assets", "media", "html2png")
CSS_CACHE_DIR = os.getenv("HTML2PNG_CSS_CACHE_DIR") or os.path.join(OUTPUT_DIR, "css_cache")
LOG_DIR = os.getenv("HTML2PNG_LOG_DIR") or os.path.join(repo_dir, "logs")
REQUEST_TIMEOUT = float(os.getenv("HTML2PNG_REQUEST_TIMEOUT", "60"))
CSS_TTL = int(os.getenv("HTML2PNG_CSS_TTL", str(CSS_CACHE_TTL)))
CSS_REVALIDATE = _env_bool("HTML2PNG_CSS_REVALIDATE", True)
CSS_MAX_BYTES = int(os.getenv("HTML2PNG_CSS_MAX_BYTES", str(MAX_CSS_BYTES)))
RENDER_WIDTH = int(os.getenv("HTML2PNG_RENDER_WIDTH", "800"))
RENDER_TIMEOUT = float(os.getenv("HTML2PNG_RENDER_TIMEOUT", "60"))

MAX_HTML_BLOCK_BYTES = 1024 * 1024
MAX_TOTAL_INPUT_BYTES = 5 * 1024 * 1024
IMAGE_NAME_PATTERN = re.compile(r"^[a-f0-9]{32}(_[a-z-]+)?\.png$")

ERROR_STATUS = {
    "invalid_input": 400,
    "unknown_engine": 400,
    "css_fetch_error": 502,
    "engine_unavailable": 503,
    "no_engines_available": 503,
    "render_failed": 500,
    "deadline_exceeded": 504,
    "internal_error": 500,
}

os.makedirs(LOG_DIR, exist_ok=True)
service_log = os.path.join(LOG_DIR, "render_service.log")

logger = logging.getLogger("html2png_service")
logger.setLevel(logging.INFO)
if not logger.handlers:
    handler = logging.FileHandler(service_log)
    handler.setFormatter(
        logging.Formatter("%(asctime)s %(levelname)s [%(name)s] %(message)s", "%Y-%m-%d %H:%M:%S")
    )
    logger.addHandler(handler)
    logger.propagate = False

app = FastAPI(title="HTML to PNG Render Service")

_css_cache: Optional[CssFetchCache] = None


def get_css_cache() -> CssFetchCache:
    global _css_cache
    if _css_cache is None or Path(CSS_CACHE_DIR) != _css_cache.cache_dir:
        _css_cache = CssFetchCache(
            Path(CSS_CACHE_DIR),
            ttl=CSS_TTL,
            max_bytes=CSS_MAX_BYTES,
            revalidate=CSS_REVALIDATE,
        )
    return _css_cache


def get_detector() -> EngineDetector:
    return EngineDetector()


def get_converter() -> HtmlToPngConverter:
    return HtmlToPngConverter(
        Path(OUTPUT_DIR),
        get_css_cache(),
        get_detector(),
        {"width": RENDER_WIDTH, "timeout": RENDER_TIMEOUT},
    )


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def _error_detail(job_id: str, message: str, category: str, data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    return {
        "success": False,
        "job_id": job_id,
        "message": message,
        "category": category,
        "timestamp": _timestamp(),
        "data": data or {},
    }


class ConvertRequest(BaseModel):
    html_blocks: List[str] = Field(..., min_length=1)
    css_url: Optional[str] = None
    engine: Optional[str] = None

    @field_validator("html_blocks", mode="before")
    @classmethod
    def _coerce_blocks(cls, value):
        if value is None or value == "":
            raise ValueError("Missing required parameter: html_blocks")
        if isinstance(value, str):
            return [value]
        return value

    @field_validator("html_blocks")
    @classmethod
    def _validate_blocks(cls, value: List[str]) -> List[str]:
        for index, block in enumerate(value):
            if not block.strip():
                raise ValueError(f"html_blocks[{index}] cannot be empty")
        return value

    @field_validator("css_url", mode="before")
    @classmethod
    def _validate_css_url(cls, value):
        if value in (None, ""):
            return None
        if not isinstance(value, str):
            raise ValueError("css_url must be a string")
        parsed = urlparse(value.strip())
        if parsed.scheme not in ("http", "https"):
            raise ValueError("css_url must use http or https scheme")
        if not parsed.netloc:
            raise ValueError("css_url must be a valid URL")
        return value.strip()

    @field_validator("engine", mode="before")
    @classmethod
    def _normalize_engine(cls, value):
        if value in (None, ""):
            return None
        return value


async def _read_payload(request: Request, job_id: str) -> Dict[str, Any]:
    content_type = request.headers.get("content-type", "")
    if "application/json" in content_type:
        try:
            payload = await request.json()
        except ValueError as exc:
            raise HTTPException(
                status_code=400,
                detail=_error_detail(job_id, "Invalid JSON", "invalid_input", {"json_error": str(exc)}),
            ) from exc
        if not isinstance(payload, dict):
            raise HTTPException(
                status_code=400,
                detail=_error_detail(job_id, "Request body must be a JSON object", "invalid_input"),
            )
        return payload

    form = await request.form()
    payload: Dict[str, Any] = {}
    blocks = form.getlist("html_blocks") or form.getlist("html_blocks[]")
    if blocks:
        payload["html_blocks"] = list(blocks)
    for key in ("css_url", "engine"):
        value = form.get(key)
        if value is not None:
            payload[key] = value
    return payload


def _log_preview(payload: Dict[str, Any]) -> Dict[str, Any]:
    preview = {key: value for key, value in payload.items() if key != "html_blocks"}
    blocks = payload.get("html_blocks")
    if isinstance(blocks, list):
        preview["html_blocks_count"] = len(blocks)
    elif blocks is not None:
        preview["html_blocks_count"] = 1
    return sanitize_log_data(preview)


def _validate_sizes(job_id: str, blocks: List[str]) -> None:
    total = 0
    for index, block in enumerate(blocks):
        size = len(block.encode("utf-8"))
        if size > MAX_HTML_BLOCK_BYTES:
            raise HTTPException(
                status_code=413,
                detail=_error_detail(
                    job_id,
                    f"html_blocks[{index}] exceeds maximum size",
                    "invalid_input",
                    {"invalid_index": index, "block_size": size, "max_size": MAX_HTML_BLOCK_BYTES},
                ),
            )
        total += size
    if total > MAX_TOTAL_INPUT_BYTES:
        raise HTTPException(
            status_code=413,
            detail=_error_detail(
                job_id,
                "Total input size exceeds maximum",
                "invalid_input",
                {"total_size": total, "max_size": MAX_TOTAL_INPUT_BYTES},
            ),
        )


def _sanitize_blocks(job_id: str, blocks: List[str]) -> List[str]:
    cleaned = []
    for index, block in enumerate(blocks):
        sanitized = sanitize_html(block)
        if not sanitized:
            raise HTTPException(
                status_code=400,
                detail=_error_detail(
                    job_id,
                    f"html_blocks[{index}] contained only dangerous/invalid HTML",
                    "invalid_input",
                    {"invalid_index": index, "reason": "Sanitization removed all content"},
                ),
            )
        cleaned.append(sanitized)
    return cleaned


@app.post("/convert")
async def convert(request: Request):
    job_id = str(uuid.uuid4())
    payload = await _read_payload(request, job_id)
    logger.info("job %s: received /convert request %s", job_id, _log_preview(payload))

    try:
        request_model = ConvertRequest(**payload)
    except ValidationError as exc:
        logger.warning("job %s: validation error: %s", job_id, exc)
        raise HTTPException(
            status_code=400,
            detail=_error_detail(
                job_id,
                "Invalid request payload.",
                "invalid_input",
                {"errors": exc.errors(include_url=False, include_context=False, include_input=False)},
            ),
        ) from exc

    _validate_sizes(job_id, request_model.html_blocks)
    blocks = _sanitize_blocks(job_id, request_model.html_blocks)

    ctx = RequestContext(REQUEST_TIMEOUT, request_id=job_id)
    converter = get_converter()
    try:
        result = await run_in_threadpool(converter.convert, blocks, request_model.css_url, request_model.engine, ctx)
    except ConversionError as exc:
        status_code = ERROR_STATUS.get(exc.category, 500)
        logger.error(
            "job %s: conversion failed (%s, HTTP %s): %s %s",
            job_id,
            exc.category,
            status_code,
            exc.message,
            sanitize_log_data(exc.detail),
        )
        raise HTTPException(
            status_code=status_code,
            detail=_error_detail(job_id, exc.message, exc.category, exc.detail),
        ) from exc

    data = result.model_dump()
    data["image_url"] = f"/images/{Path(result.output_path).name}"
    logger.info(
        "job %s: completed in %.2fs (engine=%s, cached=%s)",
        job_id,
        ctx.elapsed(),
        result.engine,
        result.cached,
    )
    return {
        "success": True,
        "message": "HTML converted to PNG successfully",
        "timestamp": _timestamp(),
        "job_id": job_id,
        "data": data,
    }


@app.get("/engines")
async def engines():
    report = await run_in_threadpool(get_detector().detect)
    return {
        "success": True,
        "timestamp": _timestamp(),
        "data": {
            **report.to_dict(),
            "priority": list(ENGINE_PRIORITY),
            "aliases": dict(ENGINE_ALIASES),
        },
    }


@app.get("/images/{name}")
async def image(name: str):
    if not IMAGE_NAME_PATTERN.match(name):
        raise HTTPException(status_code=400, detail={"message": "Invalid image name."})
    path = Path(OUTPUT_DIR) / name
    if not path.is_file():
        raise HTTPException(status_code=404, detail={"message": f"Image '{name}' not found."})
    return FileResponse(str(path), media_type="image/png")


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/")
async def root():
    return {
        "message": "HTML to PNG render API",
        "submit_endpoint": "/convert",
        "engines_endpoint": "/engines",
        "docs": "/docs",
        "engines": list(ENGINE_PRIORITY),
        "example_json": (
            'curl -H "Content-Type: application/json" '
            '-d \'{"html_blocks": ["<p>Hello</p>"], "css_url": "https://example.com/style.css"}\' '
            "http://localhost:8000/convert"
        ),
        "example_form": 'curl -F "html_blocks[]=<p>Hello</p>" -F "engine=pillow" http://localhost:8000/convert',
    }
