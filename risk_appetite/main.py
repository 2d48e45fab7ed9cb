"""
Risk Appetite API - Entry Point.

Usage:
    python -m risk_appetite.main

Configuration comes from the environment (and .env), see
config.load_config_from_env.
"""

import logging
import os

from .api import create_app
from .config import load_config_from_env
from .engine import AppetiteEngine


def build_app():
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO"),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    engine = AppetiteEngine.from_config(load_config_from_env(), create_tables=True)
    return create_app(engine)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        build_app(),
        host=os.getenv("APPETITE_API_HOST", "0.0.0.0"),
        port=int(os.getenv("APPETITE_API_PORT", "8000")),
    )
