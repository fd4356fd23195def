# api/__init__.py
from api.server import build_engine, create_app

__all__ = ["build_engine", "create_app"]
