"""Entry point — serve the task engine API with the scheduler running."""

import uvicorn

from core.config import get_settings
from core.logging_config import setup_logging


def main() -> None:
    settings = get_settings()
    setup_logging(settings.log_level, json_output=settings.log_json)
    uvicorn.run(
        "api.server:app",
        host=settings.host,
        port=settings.port,
        log_config=None,  # keep the handlers installed by setup_logging
    )


if __name__ == "__main__":
    main()
