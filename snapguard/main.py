#!/usr/bin/env python3
"""
Snapguard Service Entry Point

This module provides the entry point for running the upload service.
"""

import logging

import uvicorn

from snapguard import config


def start(host: str = config.HOST, port: int = config.PORT) -> None:
    """Start the upload service."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    print("🚀 Starting Snapguard upload service...")
    print(f"📍 Listening on http://{host}:{port}")
    print("-" * 50)

    uvicorn.run(
        "snapguard.server:create_app",
        factory=True,
        host=host,
        port=port,
        log_level="info",
    )


if __name__ == "__main__":
    start()
