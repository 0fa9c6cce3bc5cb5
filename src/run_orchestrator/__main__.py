"""Serve the API with uvicorn: ``python -m run_orchestrator``."""

import uvicorn

from run_orchestrator.config.settings import configure_logging, get_settings


def main() -> None:
    settings = get_settings()
    configure_logging(settings.log_level)
    uvicorn.run(
        "run_orchestrator.api.main:app",
        host="0.0.0.0",
        port=8000,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
