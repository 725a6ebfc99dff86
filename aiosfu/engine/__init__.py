"""Media engine interface and the in-process reference engine."""

from .base import Consumer, EngineEntity, MediaEngine, Producer, Router, Transport
from .local import LocalEngineError, LocalMediaEngine

__all__ = [
    "Consumer",
    "EngineEntity",
    "LocalEngineError",
    "LocalMediaEngine",
    "MediaEngine",
    "Producer",
    "Router",
    "Transport",
]
