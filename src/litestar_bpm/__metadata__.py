"""Distribution metadata of litestar-bpm, read from the installed package."""

from __future__ import annotations

import importlib.metadata

__all__ = ("__project__", "__version__")

__version__ = importlib.metadata.version("litestar-bpm")
"""Installed version of litestar-bpm."""
__project__ = importlib.metadata.metadata("litestar-bpm")["Name"]
"""Distribution name as declared in ``pyproject.toml``."""
