"""Routers package."""

from . import (
    health,
    accounts,
    billing,
    admin,
)
