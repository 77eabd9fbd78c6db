"""Routers package."""

from . import (
    health,
    feeds,
    cron,
)
