"""CLI entrypoint for running the FastAPI app with uvicorn."""

from __future__ import annotations

import os

import uvicorn
from dotenv import load_dotenv

from .config import PROJECT_ROOT


def main() -> None:
    """Run the ASGI server."""

    # Host/port are read before the app (and its settings) exist
    load_dotenv(PROJECT_ROOT / ".env")

    uvicorn.run(
        "narrator.app:create_app",
        factory=True,
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
        reload=False,
    )


if __name__ == "__main__":  # pragma: no cover - manual invocation
    main()
