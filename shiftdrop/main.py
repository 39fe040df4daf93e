"""Entrypoint for running the ShiftDrop API via `python -m shiftdrop.main`."""

import os

import uvicorn

from shiftdrop.api import create_app
from shiftdrop.config import configure_logging, load_settings


def run() -> None:
    settings = load_settings(os.getenv("SHIFTDROP_ENV"))
    configure_logging(settings.log_level)
    app = create_app(settings)
    uvicorn.run(
        app,
        host="0.0.0.0",
        port=int(os.getenv("PORT", "8000")),
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":  # pragma: no cover
    run()
