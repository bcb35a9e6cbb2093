"""Run the SmartStream API server with uvicorn."""
from __future__ import annotations

import os

import uvicorn


def main() -> None:
    uvicorn.run(
        "smartstream.main:app",
        host=os.getenv("APP_HOST", "0.0.0.0"),
        port=int(os.getenv("APP_PORT", "8000")),
        log_config=None,
    )


if __name__ == "__main__":
    main()
