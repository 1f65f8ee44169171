"""Provider implementations for the external workflow phases."""
from __future__ import annotations

from .phases import CommandPhaseRunner, ConfirmCallback

__all__ = ["CommandPhaseRunner", "ConfirmCallback"]
