"""HTTP surface: webhook ingress and sync control."""

from .app import create_app

__all__ = ["create_app"]
