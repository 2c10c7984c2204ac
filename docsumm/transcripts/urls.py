from __future__ import annotations

import re
from urllib.parse import parse_qs, urlsplit

_URL_CANDIDATE = re.compile(
    r"(https?://[^\s<>\"')\]}]+"
    r"|(?:www\.)?(?:m\.)?(?:music\.)?youtube\.com/[^\s<>\"')\]}]+"
    r"|(?:www\.)?youtu\.be/[^\s<>\"')\]}]+)",
    re.IGNORECASE,
)
_VIDEO_ID = re.compile(r"^[A-Za-z0-9_-]{6,}$")

YOUTUBE_HOSTS = {"youtube.com", "m.youtube.com", "music.youtube.com", "youtu.be"}
_ID_PATH_PREFIXES = {"shorts", "embed", "live", "v"}

WATCH_URL = "https://www.youtube.com/watch?v={video_id}"


def _sanitize(text: str) -> str:
    text = re.sub(r"^[\s<(\[{'\"`]+", "", text.strip())
    return re.sub(r"[\s>)\]}'\"`.,!?;:]+$", "", text)


def _candidates(raw: str) -> list[str]:
    cleaned = _sanitize(raw or "")
    if not cleaned:
        return []
    matches = _URL_CANDIDATE.findall(cleaned)
    if not matches:
        return [cleaned]
    return [m for m in (_sanitize(x) for x in matches) if m]


def _host(netloc: str) -> str:
    host = netloc.split("@")[-1].split(":")[0].lower()
    return host[4:] if host.startswith("www.") else host


def _id_from_parts(host: str, path: str, query: str) -> str:
    if host == "youtu.be":
        segments = [s for s in path.split("/") if s]
        return segments[0] if segments else ""

    path = path.rstrip("/")
    if path == "/watch":
        return (parse_qs(query).get("v") or [""])[0]

    segments = [s for s in path.split("/") if s]
    if len(segments) >= 2 and segments[0] in _ID_PATH_PREFIXES:
        return segments[1]
    return ""


def extract_video_id(value: str) -> str | None:
    """Video id from free text holding a YouTube link, or None."""
    for candidate in _candidates(value):
        if not re.match(r"^https?://", candidate, re.IGNORECASE):
            candidate = f"https://{candidate}"
        try:
            parts = urlsplit(candidate)
        except ValueError:
            continue

        host = _host(parts.netloc)
        if host not in YOUTUBE_HOSTS:
            continue

        video_id = _id_from_parts(host, parts.path, parts.query).strip()
        if _VIDEO_ID.match(video_id):
            return video_id
    return None


def normalize_video_url(value: str) -> str | None:
    video_id = extract_video_id(value)
    return WATCH_URL.format(video_id=video_id) if video_id else None


def is_valid_video_url(value: str) -> bool:
    return normalize_video_url(value) is not None
