from __future__ import annotations

import re


class ErrorCode:
    # input validation
    URL_INVALID = "URL_INVALID"
    INPUT_INVALID = "INPUT_INVALID"

    # content acquisition
    METADATA_FETCH_FAILED = "METADATA_FETCH_FAILED"
    TRANSCRIPT_BLOCKED = "TRANSCRIPT_BLOCKED"
    TRANSCRIPT_UNAVAILABLE = "TRANSCRIPT_UNAVAILABLE"
    TRANSCRIPT_FETCH_FAILED = "TRANSCRIPT_FETCH_FAILED"
    WORKER_TIMEOUT = "WORKER_TIMEOUT"
    WORKER_UNAVAILABLE = "WORKER_UNAVAILABLE"

    # generation
    MISSING_KEY = "MISSING_KEY"
    REQUEST_FAILED = "REQUEST_FAILED"
    TIMEOUT = "TIMEOUT"
    EMPTY_RESPONSE = "EMPTY_RESPONSE"
    OUTPUT_INVALID = "OUTPUT_INVALID"
    CONFIG_INVALID = "CONFIG_INVALID"
    UNKNOWN = "UNKNOWN"

    # queue / domain
    SUMMARY_CANCELED = "SUMMARY_CANCELED"
    FALLBACK_OUTPUT_INVALID = "FALLBACK_OUTPUT_INVALID"

    # ledger
    INSUFFICIENT_CREDITS = "INSUFFICIENT_CREDITS"


class AppError(Exception):
    """Error carrying a stable machine-readable code and an HTTP status."""

    def __init__(self, message: str, code: str, status_code: int = 500) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}"


_CODE_PATTERN = re.compile(r"\[([A-Z0-9_]+)\]")

_USER_MESSAGES: dict[str, str] = {
    ErrorCode.SUMMARY_CANCELED: "The summary was canceled at your request.",
    ErrorCode.FALLBACK_OUTPUT_INVALID: "Building the fallback summary failed. Please try again later.",
    ErrorCode.TIMEOUT: "Summarization took too long. Please try again.",
    ErrorCode.MISSING_KEY: "The server is not configured for summarization. Please contact an administrator.",
    ErrorCode.REQUEST_FAILED: "The summarization model is throttled or unavailable. Please try again shortly.",
    ErrorCode.EMPTY_RESPONSE: "No summary could be generated. Please try again.",
    ErrorCode.OUTPUT_INVALID: "The summary came back in an unexpected format. Please try again.",
    ErrorCode.CONFIG_INVALID: "The summarization model configuration is invalid.",
    ErrorCode.URL_INVALID: "Please check that the video URL is valid.",
    ErrorCode.INPUT_INVALID: "Please check the submitted content.",
    ErrorCode.METADATA_FETCH_FAILED: "Could not load the video details. Please try again shortly.",
    ErrorCode.TRANSCRIPT_FETCH_FAILED: "Could not load the video captions. Please try again shortly.",
    ErrorCode.TRANSCRIPT_BLOCKED: "The video platform blocked the caption request. Please try again shortly.",
    ErrorCode.TRANSCRIPT_UNAVAILABLE: "This video has no captions that can be summarized.",
    ErrorCode.WORKER_TIMEOUT: "The transcript worker timed out. Please try again.",
    ErrorCode.WORKER_UNAVAILABLE: "The transcript worker is unavailable. Please try again shortly.",
    ErrorCode.INSUFFICIENT_CREDITS: "You do not have enough credits. Top up and try again.",
}


def extract_error_code(value: object, default: str = ErrorCode.UNKNOWN) -> str:
    if isinstance(value, AppError):
        return value.code
    text = str(value) if value is not None else ""
    match = _CODE_PATTERN.search(text)
    return match.group(1) if match else default


def format_error_message(code: str, message: str) -> str:
    if message.startswith(f"[{code}]"):
        return message
    return f"[{code}] {message}"


def to_user_message(raw: str | None, fallback: str) -> str:
    if not raw:
        return fallback
    code = extract_error_code(raw, default="")
    if code in _USER_MESSAGES:
        return _USER_MESSAGES[code]
    return _USER_MESSAGES.get(raw, raw)
