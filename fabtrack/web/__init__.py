"""HTTP interface for the progress engine."""

from .app import create_app, ensure_demo_data

__all__ = ["create_app", "ensure_demo_data"]
