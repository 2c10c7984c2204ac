from __future__ import annotations

import logging

from docsumm.core.config import Settings


def configure_logging(cfg: Settings) -> None:
    level = getattr(logging, cfg.log_level.upper(), logging.INFO)
    logging.basicConfig(level=level, format=cfg.log_format)
    # keep SDK/http chatter out of job logs
    for noisy in ("httpx", "httpcore", "openai"):
        logging.getLogger(noisy).setLevel(max(level, logging.WARNING))
