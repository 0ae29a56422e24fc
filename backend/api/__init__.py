# api/__init__.py
from api.server import RelayServices, create_app

__all__ = [
    "RelayServices",
    "create_app",
]
