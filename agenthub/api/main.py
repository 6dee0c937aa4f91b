"""
HTTP server entrypoint for agenthub.

Architectural role:
- Configures process logging from `LOG_LEVEL`.
- Runs the FastAPI app from `agenthub.api.http_api` under uvicorn.

Side effects:
- Loads `.env` via `Settings.from_env()`.
- Binds `HOST`/`PORT` (defaults `0.0.0.0:8000`).
"""

import logging
import os

import uvicorn

from agenthub.config import Settings


def configure_logging(level="INFO"):
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def run_server(host: str = "0.0.0.0", port: int = 8000, reload: bool = False) -> None:
    """Run the API server."""
    if not host or len(host.strip()) == 0:
        raise ValueError("Invalid host: must be non-empty")
    if not (1 <= port <= 65535):
        raise ValueError(f"Invalid port: {port} (must be 1-65535)")

    settings = Settings.from_env()
    configure_logging(settings.log_level)
    uvicorn.run("agenthub.api.http_api:app", host=host, port=port, reload=reload)


def main():
    run_server(
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
    )


if __name__ == "__main__":
    main()
