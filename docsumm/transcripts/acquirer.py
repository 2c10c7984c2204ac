from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol, Sequence

import httpx

from docsumm.core.config import Settings
from docsumm.core.errors import AppError, ErrorCode
from docsumm.transcripts.extractor import ExtractedTranscript, YtDlpExtractor
from docsumm.transcripts.parsers import (
    body_head,
    clip_text,
    extract_player_response,
    is_blocked_caption_response,
    is_blocked_watch_response,
    is_unavailable_response,
    parse_transcript_body,
)
from docsumm.transcripts.remote_client import UNKNOWN_LABEL, RemoteExtractor, RemoteTranscriptClient
from docsumm.transcripts.urls import WATCH_URL, extract_video_id

logger = logging.getLogger(__name__)

INNERTUBE_PLAYER_URL = "https://www.youtube.com/youtubei/v1/player"
INNERTUBE_CLIENT_NAME = "WEB"
INNERTUBE_CLIENT_VERSION = "2.20231219.01.00"
TIMEDTEXT_URL = "https://www.youtube.com/api/timedtext"

_USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/122.0.0.0 Safari/537.36"
)
_BASE_HEADERS = {
    "user-agent": _USER_AGENT,
    "origin": "https://www.youtube.com",
    "referer": "https://www.youtube.com/",
    "cookie": "CONSENT=YES+cb.20210328-17-p0.en+FX+667; SOCS=CAI",
}
_CAPTION_ACCEPT = "text/plain,text/vtt,application/json,application/xml,text/xml,text/html;q=0.9,*/*;q=0.8"


class LastResortExtractor(Protocol):
    async def extract(self, video_id: str, *, max_chars: int) -> ExtractedTranscript | None: ...


@dataclass(frozen=True)
class CaptionTrack:
    language_code: str
    base_url: Optional[str] = None
    kind: Optional[str] = None

    @property
    def is_auto(self) -> bool:
        return self.kind == "asr"


@dataclass(frozen=True)
class TranscriptResult:
    transcript: str
    video_id: str
    title: str
    language_code: str
    normalized_url: str


# -----------------------
# Track selection
# -----------------------

def parse_caption_tracks(player: Dict[str, Any]) -> List[CaptionTrack]:
    renderer = ((player.get("captions") or {}).get("playerCaptionsTracklistRenderer") or {})
    tracks: List[CaptionTrack] = []
    for raw in renderer.get("captionTracks") or []:
        if not isinstance(raw, dict):
            continue
        tracks.append(
            CaptionTrack(
                language_code=str(raw.get("languageCode") or "").strip(),
                base_url=raw.get("baseUrl") or None,
                kind=raw.get("kind") or None,
            )
        )
    return tracks


def language_rank(language_code: str, preferred_languages: Sequence[str]) -> int:
    lowered = language_code.lower()
    for rank, code in enumerate(preferred_languages):
        if lowered == code or lowered.startswith(f"{code}-"):
            return rank
    return len(preferred_languages)


def rank_caption_tracks(tracks: Sequence[CaptionTrack], preferred_languages: Sequence[str]) -> List[CaptionTrack]:
    """Human-authored before auto-generated, then by language preference."""
    usable = [t for t in tracks if t.base_url]
    return sorted(usable, key=lambda t: (t.is_auto, language_rank(t.language_code, preferred_languages)))


def request_variants(track: CaptionTrack, video_id: str) -> List[str]:
    urls: List[str] = []

    def push(url: str) -> None:
        if url and url not in urls:
            urls.append(url)

    if track.base_url:
        push(track.base_url)
        try:
            base = httpx.URL(track.base_url)
            push(str(base.copy_set_param("fmt", "json3")))
            push(str(base.copy_set_param("fmt", "vtt")))
        except httpx.InvalidURL:
            pass

    params: Dict[str, str] = {"v": video_id}
    if track.language_code:
        params["lang"] = track.language_code
    if track.kind:
        params["kind"] = track.kind
    for fmt in ("json3", "vtt", None):
        query = dict(params, fmt=fmt) if fmt else params
        push(str(httpx.URL(TIMEDTEXT_URL, params=query)))
    return urls


# -----------------------
# Acquirer
# -----------------------

class TranscriptAcquirer:
    """Pulls caption text for a video through a cascade of strategies.

    Failures raise ``AppError`` with URL_INVALID, METADATA_FETCH_FAILED,
    TRANSCRIPT_BLOCKED, TRANSCRIPT_UNAVAILABLE or TRANSCRIPT_FETCH_FAILED.
    """

    def __init__(
        self,
        *,
        preferred_languages: Sequence[str] = ("ko", "en", "ja"),
        max_chars: int = 14_000,
        timeout_s: float = 12,
        extractor: LastResortExtractor | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.preferred_languages = list(preferred_languages)
        self.max_chars = max_chars
        self.timeout_s = timeout_s
        self.extractor = extractor
        self._transport = transport

    @classmethod
    def from_settings(cls, cfg: Settings, **overrides) -> "TranscriptAcquirer":
        if cfg.transcript_worker_url:
            extractor: LastResortExtractor = RemoteExtractor(RemoteTranscriptClient.from_settings(cfg))
        else:
            extractor = YtDlpExtractor.from_settings(cfg)
        kwargs = dict(
            preferred_languages=cfg.preferred_languages,
            max_chars=cfg.transcript_max_chars,
            timeout_s=cfg.transcript_http_timeout_s,
            extractor=extractor,
        )
        kwargs.update(overrides)
        return cls(**kwargs)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.timeout_s,
            transport=self._transport,
            follow_redirects=True,
            headers=_BASE_HEADERS,
        )

    @property
    def _accept_language(self) -> str:
        parts = []
        for index, code in enumerate(self.preferred_languages):
            parts.append(code if index == 0 else f"{code};q={max(0.1, 0.9 - 0.1 * index):.1f}")
        return ",".join(parts)

    async def acquire(self, video_url: str) -> TranscriptResult:
        video_id = extract_video_id(video_url)
        if not video_id:
            raise AppError("not a valid video URL", ErrorCode.URL_INVALID, 422)
        normalized_url = WATCH_URL.format(video_id=video_id)

        async with self._client() as client:
            player = await self._fetch_player(client, video_id)
            ranked = rank_caption_tracks(parse_caption_tracks(player), self.preferred_languages)
            candidates = ranked or [CaptionTrack(language_code=code) for code in self.preferred_languages]

            selected: CaptionTrack | None = None
            transcript = ""
            blocked: AppError | None = None
            unavailable: AppError | None = None
            last_error: AppError | None = None

            for index, track in enumerate(candidates):
                try:
                    transcript = await self._fetch_track(client, track, video_id)
                except AppError as e:
                    last_error = e
                    if e.code == ErrorCode.TRANSCRIPT_BLOCKED:
                        blocked = blocked or e
                    elif e.code == ErrorCode.TRANSCRIPT_UNAVAILABLE:
                        unavailable = unavailable or e
                    logger.info(
                        "track attempt failed video_id=%s index=%d language=%s kind=%s code=%s",
                        video_id, index, track.language_code, track.kind, e.code,
                    )
                    continue
                selected = track
                break

        language_code = selected.language_code if selected else ""
        if not transcript and blocked is not None and self.extractor is not None:
            extracted = await self.extractor.extract(video_id, max_chars=self.max_chars)
            if extracted is not None and extracted.transcript:
                transcript = extracted.transcript
                language_code = extracted.language_code or (ranked[0].language_code if ranked else "")

        if not transcript:
            raise blocked or unavailable or last_error or AppError(
                "could not load captions", ErrorCode.TRANSCRIPT_FETCH_FAILED, 502
            )

        title = str(((player.get("videoDetails") or {}).get("title") or "")).strip() or UNKNOWN_LABEL
        return TranscriptResult(
            transcript=transcript,
            video_id=video_id,
            title=title,
            language_code=language_code or UNKNOWN_LABEL,
            normalized_url=normalized_url,
        )

    # -----------------------
    # Metadata
    # -----------------------

    async def _fetch_player_innertube(self, client: httpx.AsyncClient, video_id: str) -> Optional[Dict[str, Any]]:
        body = {
            "videoId": video_id,
            "context": {
                "client": {
                    "clientName": INNERTUBE_CLIENT_NAME,
                    "clientVersion": INNERTUBE_CLIENT_VERSION,
                    "hl": self.preferred_languages[0] if self.preferred_languages else "en",
                }
            },
        }
        headers = {
            "accept": "*/*",
            "accept-language": self._accept_language,
            "x-youtube-client-name": "1",
            "x-youtube-client-version": INNERTUBE_CLIENT_VERSION,
        }
        try:
            response = await client.post(INNERTUBE_PLAYER_URL, json=body, headers=headers)
        except httpx.HTTPError as e:
            logger.info("innertube player failed video_id=%s error=%s", video_id, e)
            return None

        if not response.is_success:
            logger.info("innertube player not ok video_id=%s status=%d", video_id, response.status_code)
            return None
        try:
            data = response.json()
        except ValueError:
            return None
        if not isinstance(data, dict) or not (data.get("videoDetails") or data.get("captions")):
            return None
        return data

    async def _fetch_player(self, client: httpx.AsyncClient, video_id: str) -> Dict[str, Any]:
        player = await self._fetch_player_innertube(client, video_id)
        if player is not None:
            return player

        watch_url = f"{WATCH_URL.format(video_id=video_id)}&hl={self.preferred_languages[0] if self.preferred_languages else 'en'}"
        try:
            response = await client.get(watch_url, headers={"accept-language": self._accept_language})
        except httpx.HTTPError as e:
            raise AppError(f"video metadata request failed: {e}", ErrorCode.METADATA_FETCH_FAILED, 502) from e

        if not response.is_success:
            raise AppError(
                f"video metadata request failed ({response.status_code})", ErrorCode.METADATA_FETCH_FAILED, 502
            )

        page = response.text
        player = extract_player_response(page)
        if player is None:
            if is_blocked_watch_response(response.headers.get("content-type"), page, str(response.url)):
                raise AppError(
                    "the video platform blocked the metadata request", ErrorCode.TRANSCRIPT_BLOCKED, 502
                )
            raise AppError("could not parse video metadata", ErrorCode.METADATA_FETCH_FAILED, 502)
        return player

    # -----------------------
    # Captions
    # -----------------------

    async def _fetch_track(self, client: httpx.AsyncClient, track: CaptionTrack, video_id: str) -> str:
        saw_blocked = False
        saw_unavailable = False
        last_error: AppError | None = None
        headers = {"accept": _CAPTION_ACCEPT, "accept-language": self._accept_language}

        for index, url in enumerate(request_variants(track, video_id)):
            try:
                response = await client.get(url, headers=headers)
            except httpx.HTTPError as e:
                logger.info("caption request failed video_id=%s index=%d error=%s", video_id, index, e)
                last_error = AppError(f"caption request failed: {e}", ErrorCode.TRANSCRIPT_FETCH_FAILED, 502)
                continue

            body = response.text
            content_type = response.headers.get("content-type")
            response_url = str(response.url)

            if response.is_success:
                transcript = parse_transcript_body(body, content_type)
                if transcript:
                    logger.info(
                        "caption parsed video_id=%s index=%d language=%s kind=%s chars=%d",
                        video_id, index, track.language_code, track.kind, len(transcript),
                    )
                    return clip_text(transcript, self.max_chars)

            logger.info(
                "caption candidate empty video_id=%s index=%d status=%d content_type=%s head=%s",
                video_id, index, response.status_code, content_type, body_head(body),
            )
            if is_unavailable_response(response.status_code, body):
                saw_unavailable = True
            elif is_blocked_caption_response(content_type, body, response_url):
                saw_blocked = True
            elif response.is_success:
                last_error = AppError("could not parse caption body", ErrorCode.TRANSCRIPT_FETCH_FAILED, 502)
            else:
                last_error = AppError(
                    f"caption request failed ({response.status_code})", ErrorCode.TRANSCRIPT_FETCH_FAILED, 502
                )

        if saw_blocked:
            raise AppError("the video platform blocked the caption request", ErrorCode.TRANSCRIPT_BLOCKED, 502)
        if saw_unavailable:
            raise AppError("no usable captions for this video", ErrorCode.TRANSCRIPT_UNAVAILABLE, 422)
        raise last_error or AppError("could not load captions", ErrorCode.TRANSCRIPT_FETCH_FAILED, 502)
