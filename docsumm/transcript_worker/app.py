from __future__ import annotations

import logging
import secrets
import tempfile
import time
import uuid
from pathlib import Path
from typing import Any, Awaitable, Callable, List, Optional

import httpx
from fastapi import APIRouter, FastAPI, Header
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from docsumm.core.config import Settings, settings
from docsumm.core.errors import ErrorCode
from docsumm.core.logging import configure_logging
from docsumm.transcripts.extractor import YtDlpExtractor, build_sub_langs, is_throttled_stderr
from docsumm.transcripts.parsers import clip_text
from docsumm.transcripts.remote_client import UNKNOWN_LABEL, normalize_languages, normalize_max_chars
from docsumm.transcripts.urls import extract_video_id, normalize_video_url

logger = logging.getLogger(__name__)

OEMBED_URL = "https://www.youtube.com/oembed"

TitleFetcher = Callable[[str], Awaitable[str]]


class TranscriptWorkerRequest(BaseModel):
    youtubeUrl: Optional[str] = None
    requestId: Optional[str] = None
    preferredLanguages: Optional[List[Any]] = None
    maxChars: Optional[float] = None


async def fetch_oembed_title(video_url: str, transport: httpx.AsyncBaseTransport | None = None) -> str:
    try:
        async with httpx.AsyncClient(timeout=10, transport=transport) as client:
            response = await client.get(OEMBED_URL, params={"format": "json", "url": video_url})
        if not response.is_success:
            return UNKNOWN_LABEL
        payload = response.json()
    except (httpx.HTTPError, ValueError):
        return UNKNOWN_LABEL

    title = payload.get("title") if isinstance(payload, dict) else None
    return title.strip() if isinstance(title, str) and title.strip() else UNKNOWN_LABEL


def _failure(status_code: int, code: str, message: str, retryable: bool) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"code": code, "message": message, "retryable": retryable})


def build_router(cfg: Settings, extractor: YtDlpExtractor, title_fetcher: TitleFetcher) -> APIRouter:
    router = APIRouter()

    @router.get("/healthz")
    async def healthz():
        return {"ok": True}

    @router.post("/v1/youtube-transcript")
    async def youtube_transcript(
        req: TranscriptWorkerRequest,
        x_transcript_worker_key: str | None = Header(default=None),
    ):
        worker_key = (cfg.transcript_worker_key or "").strip()
        if not worker_key:
            return _failure(503, ErrorCode.WORKER_UNAVAILABLE, "TRANSCRIPT_WORKER_KEY is not configured", True)
        if not x_transcript_worker_key or not secrets.compare_digest(x_transcript_worker_key, worker_key):
            return _failure(401, ErrorCode.WORKER_UNAVAILABLE, "unauthorized transcript worker request", False)

        normalized_url = normalize_video_url(req.youtubeUrl or "")
        video_id = extract_video_id(normalized_url) if normalized_url else None
        if not normalized_url or not video_id:
            return _failure(422, ErrorCode.URL_INVALID, "not a valid video URL", False)

        started = time.monotonic()
        request_id = (req.requestId or "").strip() or str(uuid.uuid4())
        max_chars = normalize_max_chars(req.maxChars)
        languages = normalize_languages(req.preferredLanguages, default=cfg.preferred_languages)
        sub_langs = cfg.ytdlp_sub_langs or build_sub_langs(languages)

        with tempfile.TemporaryDirectory(prefix="docsumm-remote-ytdlp-") as tmp:
            try:
                run = await extractor.run_once(
                    video_id, Path(tmp), sub_langs=sub_langs, preferred_languages=languages
                )
            except OSError as e:
                logger.error("yt-dlp could not start request_id=%s error=%s", request_id, e)
                return _failure(503, ErrorCode.WORKER_UNAVAILABLE, f"transcript worker runtime error: {e}", True)

        if run.subtitle is None:
            logger.info(
                "no transcript request_id=%s video_id=%s exit=%s timed_out=%s vtt_count=%d",
                request_id, video_id, run.process.exit_code, run.process.timed_out, run.vtt_count,
            )
            if run.process.timed_out:
                return _failure(
                    504, ErrorCode.WORKER_TIMEOUT, f"yt-dlp exceeded {extractor.timeout_s}s", True
                )
            if is_throttled_stderr(run.process.stderr):
                return _failure(
                    502, ErrorCode.TRANSCRIPT_BLOCKED, "the video platform throttled the subtitle download", False
                )
            if run.vtt_count == 0:
                return _failure(
                    422, ErrorCode.TRANSCRIPT_UNAVAILABLE, "no usable captions for this video", False
                )
            return _failure(502, ErrorCode.TRANSCRIPT_FETCH_FAILED, "could not parse the subtitle file", True)

        title = await title_fetcher(normalized_url)
        duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            "transcript ready request_id=%s video_id=%s file=%s duration_ms=%d",
            request_id, video_id, run.subtitle.name, duration_ms,
        )
        return {
            "transcript": clip_text(run.subtitle.transcript, max_chars),
            "videoId": video_id,
            "title": title,
            "languageCode": run.subtitle.language_code or UNKNOWN_LABEL,
            "provider": "yt-dlp",
            "durationMs": duration_ms,
            "requestId": request_id,
        }

    return router


def create_worker_app(
    cfg: Settings | None = None,
    *,
    extractor: YtDlpExtractor | None = None,
    title_fetcher: TitleFetcher | None = None,
) -> FastAPI:
    cfg = cfg or settings
    configure_logging(cfg)
    app = FastAPI(title="docsumm transcript worker", version="0.1.0")
    app.include_router(
        build_router(cfg, extractor or YtDlpExtractor.from_settings(cfg), title_fetcher or fetch_oembed_title)
    )
    return app


app = create_worker_app()
