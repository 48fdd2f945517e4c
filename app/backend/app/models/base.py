"""
Declarative base and shared column mixins.
"""

from datetime import datetime
from typing import Any, Dict

from sqlalchemy import DateTime
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from app.utils.timeutils import utc_now


class Base(DeclarativeBase):
    """Declarative base holding the metadata of every table."""


class BaseModel(Base):
    """Abstract model with a dict serializer."""

    __abstract__ = True

    def to_dict(self) -> Dict[str, Any]:
        return {column.name: getattr(self, column.name) for column in self.__table__.columns}


class TimestampMixin:
    """Adds created_at / updated_at columns maintained on the Python side."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=utc_now,
        comment="Row creation time (UTC)"
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=utc_now,
        onupdate=utc_now,
        comment="Last modification time (UTC)"
    )
