"""FastAPI application for the screening consensus engine.

This module defines the FastAPI application, includes the API routes
and provides a convenience function to launch the server via Uvicorn.
"""

from __future__ import annotations

from typing import Dict

import uvicorn
from fastapi import FastAPI

from .. import __version__
from .routes import router

app = FastAPI(
    title="Screening Consensus Engine",
    description="Multi-reviewer screening, conflict resolution and agreement analytics",
    version=__version__,
)

app.include_router(router)


@app.get("/")
def health() -> Dict[str, str]:
    return {"status": "ok", "version": __version__}


def start_server(host: str = "0.0.0.0", port: int = 8000, reload: bool = False) -> None:
    """Start the Uvicorn web server.

    Parameters
    ----------
    host: str
        Host to bind the server to. Defaults to ``0.0.0.0``.
    port: int
        Port to listen on. Defaults to 8000.
    reload: bool
        Whether to enable auto-reload. Useful during development.
    """
    uvicorn.run(
        "sce.web.app:app",
        host=host,
        port=port,
        reload=reload,
    )


if __name__ == "__main__":
    start_server()
