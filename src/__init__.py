"""Top-level package for the lead scoring and conversion attribution engine."""
from __future__ import annotations

__version__ = "1.0.0"

__all__ = [
    "attribution",
    "core",
    "domain",
    "realtime",
    "scheduler",
    "scoring",
    "services",
]
