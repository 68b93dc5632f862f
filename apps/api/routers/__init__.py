"""Routers package."""

from . import (
    health,
    auth,
    billing,
    generation,
)
