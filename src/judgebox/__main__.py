"""Run the judge HTTP service: ``python -m judgebox``."""
from __future__ import annotations

import uvicorn

from .api.app import create_app
from .logging import setup_logging
from .services.judge_service import JudgeService
from .settings import load_settings


def main() -> None:
    settings = load_settings()
    setup_logging(settings.log_level, settings.log_format)
    app = create_app(JudgeService(settings))
    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    main()
