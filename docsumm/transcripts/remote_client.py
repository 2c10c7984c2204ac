from __future__ import annotations

import logging
import math
import uuid
from dataclasses import dataclass
from typing import Any, Optional, Sequence

import httpx

from docsumm.core.config import Settings
from docsumm.core.errors import AppError, ErrorCode
from docsumm.transcripts.extractor import ExtractedTranscript
from docsumm.transcripts.urls import WATCH_URL

logger = logging.getLogger(__name__)

ENDPOINT_PATH = "/v1/youtube-transcript"
WORKER_KEY_HEADER = "x-transcript-worker-key"

DEFAULT_MAX_CHARS = 14_000
MIN_MAX_CHARS = 1_000
MAX_MAX_CHARS = 50_000
DEFAULT_LANGUAGES = ("ko", "en", "ja")
UNKNOWN_LABEL = "(unknown)"

KNOWN_REMOTE_CODES = {
    ErrorCode.URL_INVALID,
    ErrorCode.TRANSCRIPT_UNAVAILABLE,
    ErrorCode.TRANSCRIPT_BLOCKED,
    ErrorCode.TRANSCRIPT_FETCH_FAILED,
    ErrorCode.WORKER_TIMEOUT,
    ErrorCode.WORKER_UNAVAILABLE,
}

_STATUS_BY_CODE = {
    ErrorCode.URL_INVALID: 422,
    ErrorCode.TRANSCRIPT_UNAVAILABLE: 422,
    ErrorCode.WORKER_TIMEOUT: 504,
    ErrorCode.TRANSCRIPT_BLOCKED: 502,
    ErrorCode.TRANSCRIPT_FETCH_FAILED: 502,
    ErrorCode.WORKER_UNAVAILABLE: 502,
}


def normalize_max_chars(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        return DEFAULT_MAX_CHARS
    return max(MIN_MAX_CHARS, min(MAX_MAX_CHARS, int(value)))


def normalize_languages(languages: Optional[Sequence[Any]], default: Sequence[str] = DEFAULT_LANGUAGES) -> list[str]:
    out: list[str] = []
    for entry in languages or []:
        if not isinstance(entry, str):
            continue
        code = entry.strip().lower()
        if code and code not in out:
            out.append(code)
    return out or list(default)


@dataclass(frozen=True)
class RemoteTranscript:
    transcript: str
    video_id: str
    title: str
    language_code: str
    provider: str
    duration_ms: int


def _text(data: dict, key: str) -> str:
    value = data.get(key)
    return value.strip() if isinstance(value, str) else ""


def _safe_json(response: httpx.Response) -> dict:
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def _to_failure(payload: dict, status: int, endpoint: str) -> AppError:
    code = _text(payload, "code")
    message = _text(payload, "message") or f"transcript worker request failed ({status})"

    if code in KNOWN_REMOTE_CODES:
        return AppError(message, code, _STATUS_BY_CODE[code])

    retryable = payload.get("retryable") is True
    if retryable or status >= 500 or status == 429:
        return AppError(f"{message} (endpoint: {endpoint})", ErrorCode.WORKER_UNAVAILABLE, 503)
    return AppError(f"{message} (endpoint: {endpoint})", ErrorCode.WORKER_UNAVAILABLE, 502)


def _to_success(payload: dict) -> RemoteTranscript:
    transcript = _text(payload, "transcript")
    video_id = _text(payload, "videoId")
    language_code = _text(payload, "languageCode")
    provider = _text(payload, "provider")
    if not (transcript and video_id and language_code and provider):
        raise AppError("transcript worker returned a malformed payload", ErrorCode.WORKER_UNAVAILABLE, 502)

    duration = payload.get("durationMs")
    duration_ms = max(0, round(duration)) if isinstance(duration, (int, float)) and not isinstance(duration, bool) else 0
    return RemoteTranscript(
        transcript=transcript,
        video_id=video_id,
        title=_text(payload, "title") or UNKNOWN_LABEL,
        language_code=language_code,
        provider=provider,
        duration_ms=duration_ms,
    )


class RemoteTranscriptClient:
    """Client for the standalone transcript worker."""

    def __init__(
        self,
        base_url: str | None,
        worker_key: str | None,
        *,
        timeout_s: float = 45,
        preferred_languages: Sequence[str] = DEFAULT_LANGUAGES,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = (base_url or "").strip().rstrip("/")
        self.worker_key = (worker_key or "").strip()
        self.timeout_s = timeout_s
        self.preferred_languages = list(preferred_languages)
        self._transport = transport

    @classmethod
    def from_settings(cls, cfg: Settings, **overrides) -> "RemoteTranscriptClient":
        kwargs = dict(
            base_url=cfg.transcript_worker_url,
            worker_key=cfg.transcript_worker_key,
            timeout_s=cfg.transcript_worker_timeout_s,
            preferred_languages=cfg.preferred_languages,
        )
        kwargs.update(overrides)
        return cls(**kwargs)

    @property
    def configured(self) -> bool:
        return bool(self.base_url)

    async def fetch(
        self,
        youtube_url: str,
        *,
        request_id: str | None = None,
        preferred_languages: Sequence[str] | None = None,
        max_chars: int | None = None,
    ) -> RemoteTranscript:
        if not self.base_url:
            raise AppError("TRANSCRIPT_WORKER_URL is not configured", ErrorCode.WORKER_UNAVAILABLE, 503)
        if not self.worker_key:
            raise AppError("TRANSCRIPT_WORKER_KEY is not configured", ErrorCode.WORKER_UNAVAILABLE, 503)

        endpoint = f"{self.base_url}{ENDPOINT_PATH}"
        body = {
            "youtubeUrl": youtube_url,
            "requestId": request_id or str(uuid.uuid4()),
            "preferredLanguages": normalize_languages(preferred_languages or self.preferred_languages),
            "maxChars": normalize_max_chars(max_chars),
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout_s, transport=self._transport) as client:
                response = await client.post(endpoint, json=body, headers={WORKER_KEY_HEADER: self.worker_key})
        except httpx.TimeoutException as e:
            raise AppError(
                f"transcript worker did not respond within {self.timeout_s}s", ErrorCode.WORKER_TIMEOUT, 504
            ) from e
        except httpx.HTTPError as e:
            raise AppError(
                f"transcript worker request failed: {e}", ErrorCode.WORKER_UNAVAILABLE, 503
            ) from e

        payload = _safe_json(response)
        if not response.is_success:
            raise _to_failure(payload, response.status_code, endpoint)
        return _to_success(payload)


class RemoteExtractor:
    """Last-resort extractor backed by the remote worker; same shape as YtDlpExtractor.extract."""

    def __init__(self, client: RemoteTranscriptClient):
        self.client = client

    async def extract(self, video_id: str, *, max_chars: int) -> ExtractedTranscript | None:
        try:
            result = await self.client.fetch(WATCH_URL.format(video_id=video_id), max_chars=max_chars)
        except AppError as e:
            logger.info("remote transcript worker failed video_id=%s code=%s", video_id, e.code)
            return None
        return ExtractedTranscript(transcript=result.transcript, language_code=result.language_code)
