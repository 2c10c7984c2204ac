from pydantic import Field
from pydantic_settings import BaseSettings


def _split_csv(raw: str | None) -> list[str]:
    values: list[str] = []
    for entry in (raw or "").split(","):
        entry = entry.strip()
        if entry and entry not in values:
            values.append(entry)
    return values


class Settings(BaseSettings):
    app_env: str = "dev"
    log_level: str = "INFO"
    database_url: str = "sqlite+aiosqlite:///./docsumm.db"

    # worker / queue
    worker_secret: str | None = None
    worker_batch_size: int = Field(default=5, gt=0)
    worker_concurrency: int = Field(default=1, gt=0)
    job_max_attempts: int = Field(default=3, gt=0)
    job_retry_backoff_s: int = Field(default=30, ge=0)
    auto_trigger_worker: bool = False

    # accounts
    auth_enabled: bool = False
    guest_user_id: str = "00000000-0000-0000-0000-000000000001"
    default_credits: int = Field(default=3, ge=0)

    # generation backend
    openai_api_key: str | None = None
    openai_base_url: str | None = None
    generation_model: str = "gpt-4.1-mini"
    generation_model_candidates: str = ""
    # a model that accepts video file input; unset skips direct video generation
    generation_video_model: str | None = None
    generation_timeout_s: float = Field(default=45, gt=0)
    generation_max_retries: int = Field(default=2, ge=0)
    generation_retry_base_delay_ms: int = Field(default=700, gt=0)
    generation_retry_max_delay_ms: int = Field(default=12_000, gt=0)
    generation_max_output_tokens: int = Field(default=1200, gt=0)
    generation_temperature: float = Field(default=0.2, ge=0, le=2)
    generation_top_p: float = Field(default=0.9, ge=0, le=1)

    # transcripts
    transcript_languages: str = "ko,en,ja"
    transcript_max_chars: int = Field(default=14_000, gt=0)
    transcript_http_timeout_s: float = Field(default=12, gt=0)
    ytdlp_disabled: bool = False
    ytdlp_path: str = "yt-dlp"
    ytdlp_timeout_s: float = Field(default=45, gt=0)
    ytdlp_sub_langs: str | None = None
    ytdlp_cookies_from_browser: str | None = None
    ytdlp_auto_cookie_browsers: str = "chrome,brave,safari,firefox"

    # remote transcript worker
    transcript_worker_url: str | None = None
    transcript_worker_key: str | None = None
    transcript_worker_timeout_s: float = Field(default=45, gt=0)

    class Config:
        env_file = ".env"
        extra = "ignore"

    @property
    def model_candidates(self) -> list[str]:
        return _split_csv(self.generation_model_candidates) or [self.generation_model]

    @property
    def video_model_candidates(self) -> list[str]:
        return _split_csv(self.generation_video_model)

    @property
    def preferred_languages(self) -> list[str]:
        return [code.lower() for code in _split_csv(self.transcript_languages)] or ["ko", "en", "ja"]

    @property
    def auto_cookie_browsers(self) -> list[str]:
        return _split_csv(self.ytdlp_auto_cookie_browsers)

    @property
    def log_format(self) -> str:
        return "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


settings = Settings()
