from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional, Sequence

from docsumm.core.config import Settings
from docsumm.core.errors import AppError, ErrorCode
from docsumm.db.models import SourceType
from docsumm.generation.client import GenerationClient
from docsumm.generation.prompts import build_direct_video_prompt, build_summary_prompt, build_video_context
from docsumm.runtime.fallback import build_fallback
from docsumm.runtime.formatting import count_bullets, normalize_summary, validate_format
from docsumm.transcripts.acquirer import TranscriptAcquirer, TranscriptResult

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Producer:
    name: str
    run: Callable[[], Awaitable[str]]


class Summarizer:
    """Turns a source into contract-conforming summary text.

    Generation and acquisition failures end in a deterministic fallback;
    the only error raised is FALLBACK_OUTPUT_INVALID.
    """

    def __init__(
        self,
        *,
        generation: GenerationClient,
        acquirer: TranscriptAcquirer,
        model_candidates: Sequence[str],
        video_model_candidates: Sequence[str] = (),
    ):
        self.generation = generation
        self.acquirer = acquirer
        self.model_candidates = list(model_candidates)
        self.video_model_candidates = list(video_model_candidates)

    @classmethod
    def from_settings(cls, cfg: Settings) -> "Summarizer":
        return cls(
            generation=GenerationClient.from_settings(cfg),
            acquirer=TranscriptAcquirer.from_settings(cfg),
            model_candidates=cfg.model_candidates,
            video_model_candidates=cfg.video_model_candidates,
        )

    async def summarize(self, source_type: SourceType, content: str, *, request_id: str = "-") -> str:
        if source_type == SourceType.VIDEO:
            return await self._summarize_video(content, request_id)
        return await self._summarize_text(content, request_id)

    # -----------------------
    # Cascades
    # -----------------------

    async def _summarize_text(self, content: str, request_id: str) -> str:
        prompt = build_summary_prompt(SourceType.TEXT, content)
        producers = [Producer("generate", lambda: self._generate(prompt, request_id))]
        text, errors = await self._first_success(producers, request_id)
        if text is not None:
            return text
        return self._fallback(SourceType.TEXT, content, errors[0].code, request_id)

    async def _summarize_video(self, url: str, request_id: str) -> str:
        try:
            acquired = await self.acquirer.acquire(url)
        except AppError as e:
            logger.info("transcript acquisition failed request_id=%s code=%s", request_id, e.code)
            return self._fallback(SourceType.VIDEO, url, e.code, request_id)
        except Exception:
            logger.exception("transcript acquisition crashed request_id=%s", request_id)
            return self._fallback(SourceType.VIDEO, url, ErrorCode.UNKNOWN, request_id)

        producers = [Producer("transcript", lambda: self._generate(self._transcript_prompt(acquired), request_id))]
        if self.video_model_candidates:
            producers.append(
                Producer(
                    "direct_video",
                    lambda: self._generate(
                        build_direct_video_prompt(acquired.normalized_url),
                        request_id,
                        models=self.video_model_candidates,
                        video_url=acquired.normalized_url,
                    ),
                )
            )
        else:
            logger.info("direct video generation skipped request_id=%s reason=no-video-model", request_id)

        text, errors = await self._first_success(producers, request_id)
        if text is not None:
            return text
        return self._fallback(
            SourceType.VIDEO, acquired.normalized_url, errors[0].code, request_id, transcript=acquired.transcript
        )

    async def _first_success(self, producers: Sequence[Producer], request_id: str) -> tuple[Optional[str], List[AppError]]:
        errors: List[AppError] = []
        for producer in producers:
            try:
                return await producer.run(), errors
            except AppError as e:
                errors.append(e)
                logger.info("producer failed request_id=%s producer=%s code=%s", request_id, producer.name, e.code)
            except Exception as e:
                logger.exception("producer crashed request_id=%s producer=%s", request_id, producer.name)
                errors.append(AppError(f"{type(e).__name__}: {e}", ErrorCode.UNKNOWN, 500))
        return None, errors

    # -----------------------
    # Steps
    # -----------------------

    @staticmethod
    def _transcript_prompt(acquired: TranscriptResult) -> str:
        context = build_video_context(
            url=acquired.normalized_url,
            video_id=acquired.video_id,
            title=acquired.title,
            language_code=acquired.language_code,
            transcript=acquired.transcript,
        )
        return build_summary_prompt(SourceType.VIDEO, context)

    async def _generate(
        self,
        prompt: str,
        request_id: str,
        *,
        models: Sequence[str] | None = None,
        video_url: str | None = None,
    ) -> str:
        raw = await self.generation.generate(
            prompt, models or self.model_candidates, request_id=request_id, video_url=video_url
        )
        normalized = normalize_summary(raw)
        if not normalized:
            raise AppError("generated summary was empty after normalization", ErrorCode.OUTPUT_INVALID, 502)
        if not validate_format(normalized):
            logger.error(
                "format validation failed request_id=%s bullets=%d head=%s",
                request_id,
                count_bullets(normalized),
                normalized[:220].replace("\n", " "),
            )
            raise AppError("generated summary does not follow the TL;DR / Full Summary format", ErrorCode.OUTPUT_INVALID, 502)
        return normalized

    def _fallback(
        self,
        source_type: SourceType,
        content: str,
        reason_code: str,
        request_id: str,
        *,
        transcript: str | None = None,
    ) -> str:
        text = normalize_summary(build_fallback(source_type, content, reason_code, transcript=transcript))
        if not validate_format(text):
            raise AppError("fallback summary violated the output format", ErrorCode.FALLBACK_OUTPUT_INVALID, 500)
        logger.info(
            "fallback summary used request_id=%s source_type=%s reason=%s extractive=%s",
            request_id,
            source_type.value,
            reason_code,
            bool(transcript),
        )
        return text
