"""
HTTP API for Bot Credit Guard.
"""

from .app import create_app

__all__ = ["create_app"]
