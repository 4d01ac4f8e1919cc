"""ORM models for database persistence."""

from .base import Base, TimestampedBase
from .watermark import Watermark

__all__ = [
    "Base",
    "TimestampedBase",
    "Watermark",
]
