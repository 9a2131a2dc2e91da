"""Programmatic uvicorn entry point for ParcelGate.

Reads host and port from the loaded config (127.0.0.1:8080 by default) and
starts uvicorn with hardened connection defaults.

Usage:
    python -m parcelgate.run
    parcelgate                 # via pyproject.toml [project.scripts]
"""

from __future__ import annotations

import uvicorn

from parcelgate.config import load_config

# ─── Uvicorn hardened defaults ────────────────────────────────────────────────

# New connections receive HTTP 503 when this limit is exceeded.
UVICORN_LIMIT_CONCURRENCY: int = 100

# OS-level TCP backlog for pending connections.
UVICORN_BACKLOG: int = 50

# Low keep-alive narrows the Slow Loris window.
UVICORN_TIMEOUT_KEEP_ALIVE: int = 5


def main() -> None:
    """Start the ParcelGate server.

    Raises:
        SystemExit: Propagated from load_config() on config errors.
    """
    config = load_config()

    uvicorn.run(
        "parcelgate.main:app",
        host=config.server.host,
        port=config.server.port,
        limit_concurrency=UVICORN_LIMIT_CONCURRENCY,
        backlog=UVICORN_BACKLOG,
        timeout_keep_alive=UVICORN_TIMEOUT_KEEP_ALIVE,
    )


if __name__ == "__main__":
    main()
