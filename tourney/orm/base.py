"""
tourney/orm/base.py
Base model for all ORM models
"""
from datetime import datetime, timezone
from enum import Enum as PyEnum
from typing import Type

from sqlalchemy import Column, Integer, DateTime, Enum as SQLEnum
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def enum_column_type(enum_cls: Type[PyEnum], length: int = 32) -> SQLEnum:
    """
    Closed enum stored as its lowercase value in a VARCHAR column.

    Rows always come back as enum members, never free-form strings.
    """
    return SQLEnum(
        enum_cls,
        native_enum=False,
        length=length,
        validate_strings=True,
        values_callable=lambda members: [m.value for m in members],
    )


class BaseModel(Base):
    """
    Abstract base model with common fields.
    All ORM models inherit from this.
    """
    __abstract__ = True

    id = Column(
        Integer,
        primary_key=True,
        autoincrement=True,
        index=True
    )

    created_at = Column(
        DateTime,
        default=utcnow,
        nullable=False,
        comment="Timestamp when record was created"
    )

    updated_at = Column(
        DateTime,
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
        comment="Timestamp when record was last updated"
    )
