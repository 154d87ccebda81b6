from __future__ import annotations

from enum import Enum

from tradesafe.extensions import db


def _enum_values(enum_cls) -> list[str]:
    return [member.value for member in enum_cls]


def enum_column(enum_cls: type[Enum], **kwargs):
    """String column restricted to the values of ``enum_cls``; reads back as enum members."""
    return db.Column(
        db.Enum(
            enum_cls,
            native_enum=False,
            length=32,
            values_callable=_enum_values,
            validate_strings=True,
            create_constraint=False,
        ),
        **kwargs,
    )


def iso(value):
    return value.isoformat() if value else None
