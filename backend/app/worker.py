"""Worker host: HTTP trigger surface plus the daily cron schedule."""

from __future__ import annotations

import os

import uvicorn

from backend.app.api.main import create_app
from backend.app.core.log_config import configure_logging


def main() -> None:
    configure_logging()
    uvicorn.run(
        create_app(),
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8080")),
        log_config=None,
    )


if __name__ == "__main__":
    main()
