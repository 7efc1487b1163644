"""Background execution helpers."""

from .runner import SideEffectRunner

__all__ = ["SideEffectRunner"]
