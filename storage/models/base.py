"""
Base ORM Model and Mixins.

============================================================
PURPOSE
============================================================
Declarative base and common mixins shared by every table of
the threat scan store.

============================================================
COMPONENTS
============================================================
- Base: SQLAlchemy declarative base
- TimestampMixin: created_at / updated_at columns

============================================================
"""

from datetime import datetime

from sqlalchemy import DateTime, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Declarative base for all ORM models."""

    type_annotation_map = {
        datetime: DateTime(timezone=True),
    }


class TimestampMixin:
    """
    Standard timestamp columns.

    Values are normally set by the repository from the injected clock;
    the server defaults only cover rows written by other tools.
    """

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        index=True,
        comment="Record creation timestamp (UTC)",
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        comment="Last update timestamp (UTC)",
    )
