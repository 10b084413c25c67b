"""Routers package."""

from . import (
    health,
    billing,
    payment,
)
