from __future__ import annotations

import asyncio
import logging
import re
import time
from typing import Any, Awaitable, Callable, Optional, Sequence

import openai
from openai import AsyncOpenAI

from docsumm.core.config import Settings
from docsumm.core.errors import AppError, ErrorCode
from docsumm.generation.prompts import SYSTEM

logger = logging.getLogger(__name__)

RETRYABLE_HTTP_STATUSES = {429, 500, 502, 503, 504}
MAX_BACKOFF_MS = 12_000

_RETRYABLE_MESSAGE = re.compile(
    r"rate limit|too many requests|resource exhausted|overloaded|temporar(?:y|ily) unavailable",
    re.IGNORECASE,
)
_TIMEOUT_MESSAGE = re.compile(r"timeout|timed out|deadline", re.IGNORECASE)
_MODEL_MESSAGE = re.compile(
    r"model\b.*\b(not found|does not exist|not supported)|unknown model|invalid model",
    re.IGNORECASE,
)

ClientFactory = Callable[[str, Optional[str]], Any]
Sleep = Callable[[float], Awaitable[None]]


# -----------------------
# Client cache
# -----------------------

_cached_client: AsyncOpenAI | None = None
_cached_key: tuple[str, str | None] | None = None


def get_openai_client(api_key: str, base_url: str | None = None) -> AsyncOpenAI:
    """Process-wide client, rebuilt only when credentials or endpoint change."""
    global _cached_client, _cached_key

    key = (api_key, base_url)
    if _cached_client is not None and _cached_key == key:
        return _cached_client

    # retries are owned by GenerationClient
    _cached_client = AsyncOpenAI(api_key=api_key, base_url=base_url, max_retries=0)
    _cached_key = key
    return _cached_client


# -----------------------
# Classification helpers
# -----------------------

def _status_of(error: BaseException) -> int | None:
    status = getattr(error, "status_code", None)
    return status if isinstance(status, int) else None


def _head(error: BaseException, limit: int = 220) -> str:
    return " ".join(str(error).split())[:limit]


def is_timeout_error(error: BaseException) -> bool:
    if isinstance(error, (asyncio.TimeoutError, openai.APITimeoutError)):
        return True
    return bool(_TIMEOUT_MESSAGE.search(str(error)))


def is_retryable_error(error: BaseException, status: int | None) -> bool:
    if status in RETRYABLE_HTTP_STATUSES:
        return True
    if isinstance(error, openai.APIConnectionError):
        return True
    return bool(_RETRYABLE_MESSAGE.search(str(error)))


def is_model_selection_error(error: BaseException, status: int | None) -> bool:
    if status == 404:
        return True
    if status != 400:
        return False
    return bool(_MODEL_MESSAGE.search(str(error)))


def backoff_delay_ms(base_delay_ms: int, attempt: int, max_delay_ms: int = MAX_BACKOFF_MS) -> int:
    return min(base_delay_ms * 2**attempt, max_delay_ms)


# -----------------------
# Public API
# -----------------------

class GenerationClient:
    """Calls the text-generation backend with model failover and bounded retries.

    Errors are raised as ``AppError`` with one of MISSING_KEY, REQUEST_FAILED,
    TIMEOUT, EMPTY_RESPONSE, CONFIG_INVALID or UNKNOWN.
    """

    def __init__(
        self,
        *,
        api_key: str | None,
        base_url: str | None = None,
        timeout_s: float = 45,
        max_retries: int = 2,
        retry_base_delay_ms: int = 700,
        retry_max_delay_ms: int = MAX_BACKOFF_MS,
        max_output_tokens: int = 1200,
        temperature: float = 0.2,
        top_p: float = 0.9,
        client_factory: ClientFactory | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url
        self.timeout_s = timeout_s
        self.max_retries = max_retries
        self.retry_base_delay_ms = retry_base_delay_ms
        self.retry_max_delay_ms = retry_max_delay_ms
        self.max_output_tokens = max_output_tokens
        self.temperature = temperature
        self.top_p = top_p
        self._client_factory = client_factory or get_openai_client
        self._sleep = sleep

    @classmethod
    def from_settings(cls, cfg: Settings, **overrides: Any) -> "GenerationClient":
        kwargs: dict[str, Any] = dict(
            api_key=cfg.openai_api_key,
            base_url=cfg.openai_base_url,
            timeout_s=cfg.generation_timeout_s,
            max_retries=cfg.generation_max_retries,
            retry_base_delay_ms=cfg.generation_retry_base_delay_ms,
            retry_max_delay_ms=cfg.generation_retry_max_delay_ms,
            max_output_tokens=cfg.generation_max_output_tokens,
            temperature=cfg.generation_temperature,
            top_p=cfg.generation_top_p,
        )
        kwargs.update(overrides)
        return cls(**kwargs)

    async def _call(self, client: Any, model: str, prompt: str, video_url: str | None) -> str:
        user_content: Any = prompt
        if video_url:
            user_content = [
                {"type": "input_text", "text": prompt},
                {"type": "input_file", "file_url": video_url},
            ]

        resp = await client.responses.create(
            model=model,
            input=[
                {"role": "system", "content": SYSTEM},
                {"role": "user", "content": user_content},
            ],
            temperature=self.temperature,
            top_p=self.top_p,
            max_output_tokens=self.max_output_tokens,
        )
        return resp.output_text

    async def generate(
        self,
        prompt: str,
        model_candidates: Sequence[str],
        *,
        request_id: str = "-",
        video_url: str | None = None,
    ) -> str:
        if not self.api_key:
            raise AppError("OPENAI_API_KEY is not configured", ErrorCode.MISSING_KEY, 500)

        candidates = [m for m in model_candidates if m]
        if not candidates:
            raise AppError("no generation model configured", ErrorCode.CONFIG_INVALID, 500)

        client = self._client_factory(self.api_key, self.base_url)

        for index, model in enumerate(candidates):
            has_next = index < len(candidates) - 1
            attempt = 0

            while True:
                started = time.monotonic()
                try:
                    raw = await asyncio.wait_for(
                        self._call(client, model, prompt, video_url),
                        timeout=self.timeout_s,
                    )
                except Exception as e:
                    duration_ms = int((time.monotonic() - started) * 1000)
                    status = _status_of(e)
                    timed_out = is_timeout_error(e)
                    retryable = timed_out or is_retryable_error(e, status)

                    if retryable and attempt < self.max_retries:
                        delay_ms = backoff_delay_ms(self.retry_base_delay_ms, attempt, self.retry_max_delay_ms)
                        logger.info(
                            "generation retry scheduled request_id=%s model=%s attempt=%d status=%s delay_ms=%d duration_ms=%d error=%s",
                            request_id, model, attempt + 1, status, delay_ms, duration_ms, _head(e),
                        )
                        attempt += 1
                        await self._sleep(delay_ms / 1000)
                        continue

                    if is_model_selection_error(e, status):
                        if has_next:
                            logger.info(
                                "switching model candidate (unavailable) request_id=%s model=%s status=%s",
                                request_id, model, status,
                            )
                            break
                        logger.error("model unavailable request_id=%s model=%s status=%s", request_id, model, status)
                        raise AppError(
                            f"generation model is not available: {model}; check GENERATION_MODEL / GENERATION_MODEL_CANDIDATES",
                            ErrorCode.CONFIG_INVALID,
                            500,
                        ) from e

                    if retryable and has_next:
                        logger.info(
                            "switching model candidate request_id=%s model=%s status=%s", request_id, model, status
                        )
                        break

                    if timed_out:
                        logger.error("generation timeout request_id=%s model=%s duration_ms=%d", request_id, model, duration_ms)
                        raise AppError(
                            f"generation request timed out after {self.timeout_s}s", ErrorCode.TIMEOUT, 504
                        ) from e

                    if isinstance(e, openai.OpenAIError):
                        logger.error(
                            "generation request failed request_id=%s model=%s status=%s error=%s",
                            request_id, model, status, _head(e),
                        )
                        suffix = f" ({status})" if status else ""
                        raise AppError(
                            f"generation request failed{suffix}: {_head(e)}", ErrorCode.REQUEST_FAILED, 502
                        ) from e

                    logger.exception("generation unknown error request_id=%s model=%s", request_id, model)
                    raise AppError(
                        f"unexpected generation error: {type(e).__name__}", ErrorCode.UNKNOWN, 500
                    ) from e

                duration_ms = int((time.monotonic() - started) * 1000)
                text = (raw or "").strip()
                if not text:
                    logger.error("empty response request_id=%s model=%s duration_ms=%d", request_id, model, duration_ms)
                    raise AppError("generation response contained no text", ErrorCode.EMPTY_RESPONSE, 502)

                logger.info(
                    "generation completed request_id=%s model=%s attempt=%d duration_ms=%d chars=%d",
                    request_id, model, attempt + 1, duration_ms, len(text),
                )
                return text

        raise AppError("no model candidate produced a response", ErrorCode.REQUEST_FAILED, 502)
