from __future__ import annotations

from docsumm.core.errors import AppError, ErrorCode
from docsumm.db.models import SourceType
from docsumm.transcripts.urls import normalize_video_url

MIN_TEXT_CHARS = 40
MAX_CONTENT_CHARS = 20_000


def validate_submission(source_type: SourceType, content: str) -> str:
    """Return the content to store: trimmed text, or the canonical watch URL."""
    content = (content or "").strip()
    if not content:
        raise AppError("content is empty", ErrorCode.INPUT_INVALID, 422)
    if len(content) > MAX_CONTENT_CHARS:
        raise AppError(f"content must be at most {MAX_CONTENT_CHARS:,} characters", ErrorCode.INPUT_INVALID, 422)

    if source_type == SourceType.VIDEO:
        normalized = normalize_video_url(content)
        if normalized is None:
            raise AppError("enter a valid video URL (e.g. https://youtu.be/VIDEO_ID)", ErrorCode.URL_INVALID, 422)
        return normalized

    if len(content) < MIN_TEXT_CHARS:
        raise AppError(f"text must be at least {MIN_TEXT_CHARS} characters", ErrorCode.INPUT_INVALID, 422)
    return content
