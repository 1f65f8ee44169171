"""Add unclustered storage and networking backends to a running cloud.

Only the package version lives here; the CLI entry point is
:func:`unicloud.cli.main`.
"""
from __future__ import annotations

__all__ = ["__version__"]

# Keep in sync with ``pyproject.toml``.
__version__ = "0.1.0"
