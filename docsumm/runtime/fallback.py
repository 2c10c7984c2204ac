from __future__ import annotations

import re
from typing import List, Optional, Sequence

from docsumm.db.models import SourceType
from docsumm.runtime.formatting import FULL_SUMMARY_HEADER, PLACEHOLDER_BULLET, TLDR_HEADER
from docsumm.transcripts.parsers import clip_text
from docsumm.transcripts.urls import extract_video_id

BULLET_COUNT = 3
BODY_SENTENCES = 6
EXTRACTIVE_BODY_SENTENCES = 8
MAX_BULLET_CHARS = 240
MAX_BODY_CHARS = 2_400

_SENTENCE_END = re.compile(r"(?<=[.!?。！？])\s+")


def split_sentences(text: str) -> List[str]:
    flat = " ".join((text or "").split())
    if not flat:
        return []
    return [s.strip() for s in _SENTENCE_END.split(flat) if s.strip()]


def spread_indices(total: int, count: int) -> List[int]:
    """``count`` indices spread evenly over ``range(total)``, first and last included."""
    if total <= count:
        return list(range(total))
    if count == 1:
        return [0]
    step = (total - 1) / (count - 1)
    return sorted({round(i * step) for i in range(count)})


def _bullets(sentences: Sequence[str]) -> List[str]:
    lines = [f"- {clip_text(s, MAX_BULLET_CHARS)}" for s in sentences[:BULLET_COUNT]]
    while len(lines) < BULLET_COUNT:
        lines.append(PLACEHOLDER_BULLET)
    return lines


def _render(bullets: Sequence[str], body: Sequence[str]) -> str:
    return "\n".join([TLDR_HEADER, *bullets, "", FULL_SUMMARY_HEADER, *body])


def _reason(reason_code: str) -> str:
    return f"Reason code: {reason_code}"


def _text_fallback(content: str, reason_code: str) -> str:
    sentences = split_sentences(content)
    body = [
        f"An automatic summary could not be generated, so the opening of the source is shown instead. {_reason(reason_code)}"
    ]
    if sentences:
        body.append(clip_text(" ".join(sentences[:BODY_SENTENCES]), MAX_BODY_CHARS))
    return _render(_bullets(sentences), body)


def _video_fallback(url: str, reason_code: str) -> str:
    video_id = extract_video_id(url) or "(unknown)"
    bullets = [
        f"- The video (ID: {video_id}) could not be summarized automatically.",
        f"- Its captions or the video itself could not be processed ({reason_code}).",
        "- Open the original video to review its content, or retry later.",
    ]
    body = [
        f"An automatic summary of {url} is not available right now. {_reason(reason_code)}",
    ]
    return _render(bullets, body)


def _extractive_fallback(url: str, transcript: str, reason_code: str) -> str:
    sentences = split_sentences(transcript)
    picked = [sentences[i] for i in spread_indices(len(sentences), BULLET_COUNT)]
    body_picked = [sentences[i] for i in spread_indices(len(sentences), EXTRACTIVE_BODY_SENTENCES)]
    body = [
        f"Key sentences selected from the captions of {url}. {_reason(reason_code)}",
    ]
    if body_picked:
        body.append(clip_text(" ".join(body_picked), MAX_BODY_CHARS))
    return _render(_bullets(picked), body)


def build_fallback(
    source_type: SourceType,
    content: str,
    reason_code: str,
    *,
    transcript: Optional[str] = None,
) -> str:
    """Deterministic summary used when generation is unusable."""
    if source_type == SourceType.VIDEO:
        if transcript and transcript.strip():
            return _extractive_fallback(content, transcript, reason_code)
        return _video_fallback(content, reason_code)
    return _text_fallback(content, reason_code)
