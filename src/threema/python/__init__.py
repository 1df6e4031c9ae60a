# SPDX-FileCopyrightText: 2020-present Dan Pascu <dan@aethereal.link>
#
# SPDX-License-Identifier: AGPL-3.0-or-later

from enum import Enum
from types import NoneType, UnionType

__all__ = 'reprproxy',  # noqa: COM818


class reprproxy:  # noqa: N801
    """
    A proxy to provide better representation for certain types.

    Union types, classes and Enum members are represented the way they
    appear in the code, which makes error messages more readable. Long
    byte strings are abbreviated so that message payloads do not flood
    the output. Everything else gets their normal representation.
    """

    max_bytes = 32

    def __init__(self, value: object) -> None:
        self.value = value

    def __repr__(self) -> str:
        match self.value:
            case UnionType() as value:
                return ' | '.join('None' if _type is NoneType else reprproxy(_type).__repr__() for _type in value.__args__)
            case Enum() as value:
                return f'{value.__class__.__qualname__}.{value.name}'
            case type() as value:
                return value.__qualname__
            case bytes() as value if type(value) is bytes and len(value) > self.max_bytes:
                return f'{value[:self.max_bytes]!r}...<{len(value)} bytes>'
            case value:
                return '...' if value is Ellipsis else repr(value)

    __str__ = __repr__
