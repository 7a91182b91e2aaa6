"""Declarative base for the orgscope schema."""

from datetime import datetime

from sqlalchemy import DateTime
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Base for every model; datetime columns are TIMESTAMPTZ (sessions run in UTC)."""

    type_annotation_map = {
        datetime: DateTime(timezone=True),
    }
