"""Application entry point for the raffle engine API."""

from __future__ import annotations

import uvicorn

from raffle_backend.app import create_app
from raffle_backend.app.core.config_core import get_settings


def main() -> None:
    """Run the raffle engine FastAPI server."""

    settings = get_settings()
    uvicorn.run(create_app(), host=settings.APP_HOST, port=settings.APP_PORT)


if __name__ == "__main__":
    main()
