"""
Base model class for all SQLAlchemy models.

WHY: Centralizing common model functionality (timestamps, ID, money
columns) in one place keeps every billing table consistent.
"""

from datetime import datetime
from typing import Type
from sqlalchemy import Column, Integer, DateTime, Numeric, Enum as SQLEnum
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """
    Base class for all SQLAlchemy models.

    WHY: DeclarativeBase provides the foundation for SQLAlchemy 2.0 models
    with improved type hints and async support.
    """

    pass


class TimestampMixin:
    """
    Mixin to add created_at and updated_at timestamps to models.
    """

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


class PrimaryKeyMixin:
    """
    Mixin to add an integer primary key to models.
    """

    id = Column(Integer, primary_key=True, index=True)


def money_column(comment: str, nullable: bool = False, **kwargs) -> Column:
    """
    Build a Numeric(12, 2) column for a money amount.

    WHY: Money is stored as exact decimals with cent precision everywhere.
    Float columns would break the total == subtotal + tax - discount + fee
    equation after a round trip through the database.
    """
    return Column(
        Numeric(12, 2),
        nullable=nullable,
        default=0,
        comment=comment,
        **kwargs,
    )


def enum_column(enum_class: Type, name: str, **kwargs) -> Column:
    """
    Build a column for a str Enum stored by value.

    WHY: values_callable stores the enum value (lowercase) instead of the
    member name, so rows read the same in SQL as in the API.
    """
    return Column(
        SQLEnum(
            enum_class,
            name=name,
            values_callable=lambda enum: [e.value for e in enum],
        ),
        **kwargs,
    )
