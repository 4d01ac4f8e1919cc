"""Watermark model for the last processed message timestamp."""

from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column

from .base import TimestampedBase


class Watermark(TimestampedBase):
    """Named cursor holding the newest processed Slack message timestamp."""

    __tablename__ = "watermarks"

    name: Mapped[str] = mapped_column(String, primary_key=True)
    ts: Mapped[str] = mapped_column(String, nullable=False)
