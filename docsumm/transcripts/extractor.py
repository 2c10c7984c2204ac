from __future__ import annotations

import asyncio
import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Optional, Sequence

from docsumm.core.config import Settings
from docsumm.transcripts.parsers import SubtitleFile, body_head, clip_text, parse_best_subtitle_file
from docsumm.transcripts.urls import WATCH_URL

logger = logging.getLogger(__name__)

_OUTPUT_TAIL_CHARS = 8_000

_THROTTLED_STDERR_MARKERS = (
    "too many requests",
    "http error 429",
    "sign in to confirm",
    "captcha",
    "use --cookies-from-browser",
)
# subtitle download failures are worth a cookie retry but are not proof of blocking
_COOKIE_RETRY_STDERR_MARKERS = _THROTTLED_STDERR_MARKERS + ("unable to download video subtitles",)


@dataclass(frozen=True)
class ProcessResult:
    exit_code: Optional[int]
    stdout: str
    stderr: str
    timed_out: bool


ProcessRunner = Callable[[str, Sequence[str], float], Awaitable[ProcessResult]]


async def run_process(command: str, args: Sequence[str], timeout_s: float) -> ProcessResult:
    """Run a command with captured output; the process is killed when the timeout expires.

    Raises OSError when the executable cannot be started.
    """
    proc = await asyncio.create_subprocess_exec(
        command,
        *args,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        env=os.environ.copy(),
    )
    timed_out = False
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout_s)
    except asyncio.TimeoutError:
        timed_out = True
        proc.kill()
        stdout, stderr = await proc.communicate()

    return ProcessResult(
        exit_code=proc.returncode,
        stdout=(stdout or b"").decode("utf-8", errors="replace")[-_OUTPUT_TAIL_CHARS:],
        stderr=(stderr or b"").decode("utf-8", errors="replace")[-_OUTPUT_TAIL_CHARS:],
        timed_out=timed_out,
    )


def is_throttled_stderr(stderr: str) -> bool:
    lowered = stderr.lower()
    return any(marker in lowered for marker in _THROTTLED_STDERR_MARKERS)


def should_retry_with_cookies(stderr: str) -> bool:
    lowered = stderr.lower()
    return any(marker in lowered for marker in _COOKIE_RETRY_STDERR_MARKERS)


def build_sub_langs(preferred_languages: Sequence[str]) -> str:
    """``["ko", "en"]`` -> ``"ko.*,ko,en.*,en"``."""
    parts: list[str] = []
    for language in preferred_languages:
        parts.extend([f"{language}.*", language])
    return ",".join(parts)


@dataclass(frozen=True)
class ExtractorRun:
    process: ProcessResult
    subtitle: Optional[SubtitleFile]
    vtt_count: int


@dataclass(frozen=True)
class ExtractedTranscript:
    transcript: str
    language_code: str


class YtDlpExtractor:
    """Out-of-process subtitle extraction with the yt-dlp CLI."""

    def __init__(
        self,
        *,
        path: str = "yt-dlp",
        timeout_s: float = 45,
        preferred_languages: Sequence[str] = ("ko", "en", "ja"),
        sub_langs: str | None = None,
        cookies_from_browser: str | None = None,
        auto_cookie_browsers: Sequence[str] = (),
        disabled: bool = False,
        runner: ProcessRunner = run_process,
    ) -> None:
        self.path = path
        self.timeout_s = timeout_s
        self.preferred_languages = list(preferred_languages)
        self.sub_langs = sub_langs or build_sub_langs(self.preferred_languages)
        self.cookies_from_browser = cookies_from_browser
        self.auto_cookie_browsers = list(auto_cookie_browsers)
        self.disabled = disabled
        self._runner = runner

    @classmethod
    def from_settings(cls, cfg: Settings, **overrides) -> "YtDlpExtractor":
        kwargs = dict(
            path=cfg.ytdlp_path,
            timeout_s=cfg.ytdlp_timeout_s,
            preferred_languages=cfg.preferred_languages,
            sub_langs=cfg.ytdlp_sub_langs,
            cookies_from_browser=cfg.ytdlp_cookies_from_browser,
            auto_cookie_browsers=cfg.auto_cookie_browsers,
            disabled=cfg.ytdlp_disabled,
        )
        kwargs.update(overrides)
        return cls(**kwargs)

    def build_args(
        self,
        video_url: str,
        output_template: str,
        *,
        sub_langs: str | None = None,
        browser: str | None = None,
    ) -> list[str]:
        args = [
            "--skip-download",
            "--write-auto-subs",
            "--write-subs",
            "--sub-format",
            "vtt",
            "--sub-langs",
            sub_langs or self.sub_langs,
            "--output",
            output_template,
            "--no-warnings",
            "--no-progress",
            "--restrict-filenames",
            video_url,
        ]
        if browser:
            args = ["--cookies-from-browser", browser, *args]
        return args

    def cookie_candidates(self) -> list[str | None]:
        if self.cookies_from_browser:
            return [self.cookies_from_browser]
        return [None, *self.auto_cookie_browsers]

    async def run_once(
        self,
        video_id: str,
        work_dir: Path,
        *,
        sub_langs: str | None = None,
        preferred_languages: Sequence[str] | None = None,
        browser: str | None = None,
    ) -> ExtractorRun:
        """One invocation into ``work_dir``; raises OSError if yt-dlp cannot start."""
        video_url = WATCH_URL.format(video_id=video_id)
        output_template = str(Path(work_dir) / f"{video_id}.%(ext)s")
        args = self.build_args(video_url, output_template, sub_langs=sub_langs, browser=browser)

        result = await self._runner(self.path, args, self.timeout_s)
        subtitle, vtt_count = parse_best_subtitle_file(
            Path(work_dir), preferred_languages or self.preferred_languages
        )
        return ExtractorRun(process=result, subtitle=subtitle, vtt_count=vtt_count)

    async def extract(self, video_id: str, *, max_chars: int) -> ExtractedTranscript | None:
        """Last-resort transcript, or None. Never raises for extractor failures."""
        if self.disabled:
            return None

        explicit = bool(self.cookies_from_browser)
        with tempfile.TemporaryDirectory(prefix="docsumm-ytdlp-") as tmp:
            work_dir = Path(tmp)
            for index, browser in enumerate(self.cookie_candidates()):
                try:
                    run = await self.run_once(video_id, work_dir, browser=browser)
                except OSError as e:
                    logger.info("yt-dlp could not start video_id=%s error=%s", video_id, e)
                    return None

                retry_with_cookies = should_retry_with_cookies(run.process.stderr)
                logger.info(
                    "yt-dlp result video_id=%s attempt=%d exit=%s timed_out=%s browser=%s vtt_count=%d retry_with_cookies=%s stderr=%s",
                    video_id,
                    index,
                    run.process.exit_code,
                    run.process.timed_out,
                    browser,
                    run.vtt_count,
                    retry_with_cookies,
                    body_head(run.process.stderr),
                )

                # a non-zero exit still counts when some subtitle file was written
                if run.subtitle is not None:
                    return ExtractedTranscript(
                        transcript=clip_text(run.subtitle.transcript, max_chars),
                        language_code=run.subtitle.language_code,
                    )

                if not explicit and not retry_with_cookies:
                    break
        return None
