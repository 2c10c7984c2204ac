from __future__ import annotations

import html
import json
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Sequence

PLAYER_RESPONSE_MARKERS = (
    "var ytInitialPlayerResponse = ",
    "ytInitialPlayerResponse = ",
    'window["ytInitialPlayerResponse"] = ',
)

BLOCKED_BODY_MARKERS = (
    "consent.youtube.com",
    "before you continue to youtube",
    "sign in to confirm you",
    "unusual traffic",
    "www.google.com/sorry",
    "captcha",
    "automated queries",
)

_UNAVAILABLE_BODY_MARKERS = (
    "transcript is unavailable",
    "captions are not available",
    "<transcript/>",
    "<transcript></transcript>",
)

_BRACKETED_ONLY = re.compile(r"^\[[^\]]+\]$")
_XML_TEXT = re.compile(r"<text\b[^>]*>(.*?)</text>", re.IGNORECASE | re.DOTALL)
_VTT_TIMING = re.compile(r"^(\d{2}:)?\d{2}:\d{2}\.\d{3}\s+-->\s+(\d{2}:)?\d{2}:\d{2}\.\d{3}(\s+.+)?$")
_VTT_HEADER = re.compile(r"^(webvtt|kind:\s+|language:\s+|note(\s|$)|style(\s|$)|region(\s|$))", re.IGNORECASE)
_TAG = re.compile(r"<[^>]+>")


# -----------------------
# Text helpers
# -----------------------

def clip_text(value: str, max_chars: int) -> str:
    """Cut to ``max_chars``, preferring a word boundary past 70% of the budget."""
    if len(value) <= max_chars:
        return value
    clipped = value[:max_chars]
    boundary = clipped.rfind(" ")
    if boundary > max_chars * 0.7:
        return f"{clipped[:boundary].strip()}..."
    return f"{clipped.strip()}..."


def normalize_chunk(value: str) -> str:
    normalized = " ".join(value.split())
    if not normalized or _BRACKETED_ONLY.match(normalized):
        return ""
    return normalized


def _join_deduped(chunks: Sequence[str]) -> str:
    out: list[str] = []
    for chunk in chunks:
        if chunk and (not out or out[-1] != chunk):
            out.append(chunk)
    return " ".join(" ".join(out).split())


def body_head(raw: str, limit: int = 220) -> str:
    return " ".join(raw.split())[:limit]


# -----------------------
# Caption formats
# -----------------------

def parse_json3(payload: Dict[str, Any]) -> str:
    chunks: list[str] = []
    for event in payload.get("events") or []:
        for seg in (event or {}).get("segs") or []:
            chunks.append(normalize_chunk((seg or {}).get("utf8") or ""))
    return _join_deduped(chunks)


def parse_xml(raw: str) -> str:
    return _join_deduped([normalize_chunk(html.unescape(m)) for m in _XML_TEXT.findall(raw)])


def parse_vtt(raw: str) -> str:
    chunks: list[str] = []
    for line in raw.replace("\r\n", "\n").split("\n"):
        line = line.strip()
        if not line or line.isdigit() or _VTT_HEADER.match(line) or _VTT_TIMING.match(line):
            continue
        chunks.append(normalize_chunk(html.unescape(_TAG.sub("", line))))
    return _join_deduped(chunks)


def parse_transcript_body(raw_body: str, content_type: Optional[str]) -> str:
    trimmed = raw_body.strip()
    if not trimmed:
        return ""

    ctype = (content_type or "").lower()
    if "application/json" in ctype or trimmed.startswith("{"):
        try:
            payload = json.loads(trimmed)
        except json.JSONDecodeError:
            return ""
        return parse_json3(payload) if isinstance(payload, dict) else ""

    if "text/xml" in ctype or "application/xml" in ctype or trimmed.startswith("<"):
        return parse_xml(trimmed)

    return parse_vtt(trimmed)


# -----------------------
# Response classification
# -----------------------

def is_unavailable_response(status: int, body: str) -> bool:
    if status in (404, 410):
        return True
    lowered = body.lower()
    return any(marker in lowered for marker in _UNAVAILABLE_BODY_MARKERS)


def _looks_like_html(content_type: Optional[str], lowered_body: str) -> bool:
    return "text/html" in (content_type or "").lower() or "<html" in lowered_body or "<!doctype html" in lowered_body


def is_blocked_caption_response(content_type: Optional[str], body: str, response_url: str = "") -> bool:
    """HTML where caption data was expected."""
    lowered = body.lower()
    if not _looks_like_html(content_type, lowered):
        return False
    if "/api/timedtext" in response_url or not body.strip():
        return True
    return any(marker in lowered for marker in BLOCKED_BODY_MARKERS)


def is_blocked_watch_response(content_type: Optional[str], body: str, response_url: str = "") -> bool:
    lowered = body.lower()
    if not _looks_like_html(content_type, lowered):
        return False
    if "consent.youtube.com" in response_url or "google.com/sorry" in response_url or not body.strip():
        return True
    return any(marker in lowered for marker in BLOCKED_BODY_MARKERS)


# -----------------------
# Watch page
# -----------------------

def extract_json_block(source: str, start_from: int) -> Optional[str]:
    """Balanced ``{...}`` starting at the first brace after ``start_from``."""
    start = source.find("{", start_from)
    if start < 0:
        return None

    depth = 0
    in_string = False
    escaped = False
    for index in range(start, len(source)):
        char = source[index]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue

        if char == '"':
            in_string = True
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return source[start : index + 1]
    return None


def extract_player_response(page: str) -> Optional[Dict[str, Any]]:
    for marker in PLAYER_RESPONSE_MARKERS:
        index = page.find(marker)
        if index < 0:
            continue
        block = extract_json_block(page, index + len(marker))
        if not block:
            continue
        try:
            data = json.loads(block)
        except json.JSONDecodeError:
            continue
        if isinstance(data, dict):
            return data
    return None


# -----------------------
# Extractor output
# -----------------------

@dataclass(frozen=True)
class SubtitleFile:
    name: str
    transcript: str
    language_code: str


def subtitle_language(name: str) -> str:
    """``abc123.en-orig.vtt`` -> ``en-orig``."""
    parts = name.split(".")
    return parts[-2] if len(parts) >= 3 else ""


def subtitle_file_score(name: str, preferred_languages: Sequence[str]) -> int:
    language = subtitle_language(name).lower()
    for rank, code in enumerate(preferred_languages):
        if language == code or language.startswith(f"{code}-"):
            return 100 - rank
    return 0


def parse_best_subtitle_file(work_dir: Path, preferred_languages: Sequence[str]) -> tuple[Optional[SubtitleFile], int]:
    """First non-empty ``.vtt`` by language preference, plus how many were written."""
    vtt_files = sorted(
        (p for p in Path(work_dir).iterdir() if p.is_file() and p.name.lower().endswith(".vtt")),
        key=lambda p: subtitle_file_score(p.name, preferred_languages),
        reverse=True,
    )
    for path in vtt_files:
        transcript = parse_vtt(path.read_text(encoding="utf-8", errors="replace"))
        if transcript:
            return SubtitleFile(path.name, transcript, subtitle_language(path.name)), len(vtt_files)
    return None, len(vtt_files)
