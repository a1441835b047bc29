"""Routers package."""

from . import (
    health,
    files,
    records,
    jobs,
    sessions,
    analytics,
)
