"""Dues-gated student poll service."""

from .main import create_application

__all__ = ["create_application"]
