"""Tally FastAPI application package."""

from .version import __version__  # noqa: F401
