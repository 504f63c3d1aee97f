"""
EOS Fusion API entry point.

Run with: uvicorn app.main:app
"""
import logging
import os

from fastapi import FastAPI

from app.routers import eos_fusion


def create_app() -> FastAPI:
    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    app = FastAPI(title="EOS Fusion", version="1.0.0")
    app.include_router(eos_fusion.router)

    return app


app = create_app()
