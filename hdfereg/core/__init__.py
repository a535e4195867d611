# hdfereg/core/__init__.py
"""Core computational modules for hdfereg."""
from . import config, errors, families, fe, groups, inference, linalg, optimize, parallel

__all__ = [
    "config",
    "errors",
    "families",
    "fe",
    "groups",
    "inference",
    "linalg",
    "optimize",
    "parallel",
]
