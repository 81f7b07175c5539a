"""Entry point — serve the scheduler API; the loop starts with the app."""

import uvicorn

from core.config import Settings
from core.logging_config import setup_json_logging


def main():
    settings = Settings.from_env()
    setup_json_logging(settings.log_level)
    uvicorn.run(
        "api.server:app",
        host=settings.host,
        port=settings.port,
        log_config=None,   # keep the JSON handlers installed above
    )


if __name__ == "__main__":
    main()
