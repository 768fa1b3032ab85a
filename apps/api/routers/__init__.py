"""Routers package."""

from . import (
    health,
    billing,
    preview,
)
