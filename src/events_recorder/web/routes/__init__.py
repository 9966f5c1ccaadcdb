"""Flask blueprints for the web app. Each module exposes create_bp(orchestrator)."""

from events_recorder.web.routes.api import create_bp as create_api_bp

__all__ = [
    "create_api_bp",
]
