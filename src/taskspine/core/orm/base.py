"""Declarative base for task-spine tables.

Column types come from ``type_annotation_map``; constraint and index
names follow ``naming_convention`` so they are stable across dialects.
"""

from __future__ import annotations

import datetime

from sqlalchemy import JSON, DateTime, Integer, MetaData, Text
from sqlalchemy.orm import DeclarativeBase

NAMING_CONVENTION = {
    "ix": "ix_%(table_name)s_%(column_0_N_name)s",
    "uq": "uq_%(table_name)s_%(column_0_N_name)s",
    "pk": "pk_%(table_name)s",
}


class TaskSpineBase(DeclarativeBase):
    """Base class of every task-spine ORM model.

    Timestamps map to naive ``DateTime`` holding UTC; JSON payloads map
    to ``JSON`` (TEXT on SQLite).
    """

    metadata = MetaData(naming_convention=NAMING_CONVENTION)

    type_annotation_map = {
        str: Text,
        int: Integer,
        datetime.datetime: DateTime,
        dict: JSON,
        list: JSON,
    }
