"""ASGI entry point: ``uvicorn itemresearch.main:app``."""
from itemresearch.api.main import app

__all__ = ["app"]
