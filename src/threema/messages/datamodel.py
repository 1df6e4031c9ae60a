# SPDX-FileCopyrightText: 2020-present Dan Pascu <dan@aethereal.link>
#
# SPDX-License-Identifier: AGPL-3.0-or-later

import enum
from collections.abc import Buffer, Iterable, MutableMapping
from io import BytesIO
from secrets import token_bytes
from types import GenericAlias, NotImplementedType, new_class
from typing import ClassVar, Protocol, Self, SupportsBytes, SupportsIndex, TypeVar, overload, runtime_checkable

from nacl.bindings import crypto_scalarmult_base

from .exceptions import RandomSourceFailure

__all__ = (  # noqa: RUF022
    # Protocols and types

    'WireData',
    'DataWireProtocol',
    'DataWireAdapter',

    # Adapters and the adapter registry

    'AdapterRegistry',

    'UnsignedIntegerAdapter',

    'UInt8Adapter',
    'UInt16Adapter',
    'UInt32Adapter',

    'TrailingBytesAdapter',
    'TrailingStringAdapter',
    'IdentityAdapter',

    # Abstract types

    'Enum',
    'FixedSize',
    'List',
    'make_list_type',

    # Concrete types

    'MessageType',
    'DeliveryType',

    'MessageID',
    'GroupID',
    'BlobID',
    'Nonce',
    'PublicKey',
    'SecretKey',
    'SharedKey',

    # Helpers

    'secure_random_bytes',
)


type WireData = bytes | bytearray | memoryview | BytesIO


# Protocols

@runtime_checkable
class DataWireProtocol(Protocol):
    """The wire protocol for gateway message data elements"""

    @classmethod
    def from_wire(cls, buffer: WireData) -> Self: ...

    def to_wire(self) -> bytes: ...

    def wire_length(self) -> int: ...


@runtime_checkable
class DataWireAdapter[T](Protocol):
    """Wire protocol adapter for a gateway message data element of type T"""

    _abstract_: ClassVar[bool] = True

    @staticmethod
    def from_wire(buffer: WireData) -> T: ...

    @staticmethod
    def to_wire(value: T, /) -> bytes: ...

    @staticmethod
    def wire_length(value: T, /) -> int: ...

    @staticmethod
    def validate(value: T, /) -> T: ...


class AdapterRegistry[T]:
    _adapters: ClassVar[MutableMapping[type, type[DataWireAdapter]]] = {}

    @classmethod
    def associate(cls, data_type: type[T], adapter: type[DataWireAdapter[T]]) -> None:
        if issubclass(data_type, DataWireProtocol):
            raise TypeError('Adapters for types that already implement DataWireProtocol must be explicitly provided with the element descriptors.')
        cls._adapters[data_type] = adapter

    @classmethod
    def get_adapter(cls, data_type: type[T]) -> type[DataWireAdapter[T]] | None:
        return cls._adapters.get(data_type, None)


# Helpers

def secure_random_bytes(size: int) -> bytes:
    """Return size bytes from the operating system's secure random source"""
    try:
        return token_bytes(size)
    except (OSError, NotImplementedError) as exc:
        raise RandomSourceFailure(f'The secure random source failed: {exc}') from exc


def _read_exactly(buffer: WireData, size: int) -> bytes | bytearray | memoryview:
    if isinstance(buffer, BytesIO):
        return buffer.read(size)
    return buffer[:size]


def _read_remaining(buffer: WireData) -> bytes:
    if isinstance(buffer, BytesIO):
        return buffer.read()
    return bytes(buffer)


# Adapters

class UnsignedIntegerAdapter:
    """Adapter for unsigned integers which are represented in little-endian byte order on the wire"""

    _abstract_: ClassVar[bool] = True
    _bits_: ClassVar[int] = NotImplemented
    _size_: ClassVar[int] = NotImplemented

    def __init_subclass__(cls, *, bits: int = NotImplemented, **kw: object) -> None:
        if bits is not NotImplemented:
            cls._bits_ = bits
            cls._size_ = bits // 8
            cls._abstract_ = False
        super().__init_subclass__(**kw)

    @classmethod
    def from_wire(cls, buffer: WireData) -> int:
        data = _read_exactly(buffer, cls._size_)
        if len(data) < cls._size_:
            raise ValueError(f'Insufficient data in buffer to extract an unsigned {cls._bits_}-bit integer')
        return int.from_bytes(data, byteorder='little')

    @classmethod
    def to_wire(cls, value: int, /) -> bytes:
        return value.to_bytes(cls._size_, byteorder='little')

    @classmethod
    def wire_length(cls, _: int, /) -> int:
        return cls._size_

    @classmethod
    def validate(cls, value: int, /) -> int:
        if value < 0 or value.bit_length() > cls._bits_:
            raise ValueError(f'Value is out of range for unsigned {cls._bits_}-bits integer: {value!r}')
        return value


class UInt8Adapter(UnsignedIntegerAdapter, bits=8):
    pass


class UInt16Adapter(UnsignedIntegerAdapter, bits=16):
    pass


class UInt32Adapter(UnsignedIntegerAdapter, bits=32):
    pass


class TrailingBytesAdapter:
    """Adapter for a bytes buffer that extends to the end of the data, without a length prefix"""

    _abstract_: ClassVar[bool] = False

    @staticmethod
    def from_wire(buffer: WireData) -> bytes:
        return _read_remaining(buffer)

    @staticmethod
    def to_wire(value: bytes, /) -> bytes:
        return bytes(value)

    @staticmethod
    def wire_length(value: bytes, /) -> int:
        return len(value)

    @staticmethod
    def validate(value: bytes, /) -> bytes:
        if not isinstance(value, bytes | bytearray | memoryview):
            raise TypeError(f'Expected a bytes-like object, got {value.__class__.__qualname__!r}')
        return bytes(value)


class TrailingStringAdapter:
    """Represent strings as UTF-8 encoded bytes that extend to the end of the data"""

    _abstract_: ClassVar[bool] = False

    @staticmethod
    def from_wire(buffer: WireData) -> str:
        data = _read_remaining(buffer)
        try:
            return data.decode()
        except UnicodeDecodeError as exc:
            raise ValueError(f'Cannot decode bytes to string: {exc}') from exc

    @staticmethod
    def to_wire(value: str, /) -> bytes:
        return value.encode()

    @staticmethod
    def wire_length(value: str, /) -> int:
        return len(value.encode())

    @staticmethod
    def validate(value: str, /) -> str:
        if not isinstance(value, str):
            raise TypeError(f'Expected a string, got {value.__class__.__qualname__!r}')
        return value


class IdentityAdapter:
    """Adapter for gateway identities, which are exactly 8 ASCII characters long"""

    _abstract_: ClassVar[bool] = False
    _size_: ClassVar[int] = 8

    @classmethod
    def from_wire(cls, buffer: WireData) -> str:
        data = _read_exactly(buffer, cls._size_)
        if len(data) < cls._size_:
            raise ValueError('Insufficient data in buffer to extract an identity')
        try:
            return bytes(data).decode('ascii')
        except UnicodeDecodeError as exc:
            raise ValueError(f'Identity is not an ASCII string: {exc}') from exc

    @classmethod
    def to_wire(cls, value: str, /) -> bytes:
        return value.encode('ascii')

    @classmethod
    def wire_length(cls, _: str, /) -> int:
        return cls._size_

    @classmethod
    def validate(cls, value: str, /) -> str:
        if not isinstance(value, str):
            raise TypeError(f'Expected a string for the identity, got {value.__class__.__qualname__!r}')
        if not value.isascii() or len(value) != cls._size_:
            raise ValueError(f'An identity must have exactly {cls._size_} ASCII characters: {value!r}')
        return value


# Enumeration types

class Enum(enum.IntEnum):
    _size_: ClassVar[int]

    def __init_subclass__(cls, *, size: int = 1, **kw: object) -> None:
        cls._size_ = size
        super().__init_subclass__(**kw)

    def __repr__(self) -> str:
        return f'{self.__class__.__qualname__}.{self.name}'

    @classmethod
    def from_wire(cls, buffer: WireData) -> Self:
        data = _read_exactly(buffer, cls._size_)
        if len(data) < cls._size_:
            raise ValueError(f'Insufficient data in buffer to extract {cls.__qualname__!r}')
        return cls(int.from_bytes(data, byteorder='little'))

    def to_wire(self) -> bytes:
        return self.to_bytes(self._size_, byteorder='little')

    def wire_length(self) -> int:
        return self._size_


class MessageType(Enum):
    TEXT = 0x01
    IMAGE = 0x02
    VOICE = 0x14
    FILE = 0x17
    GROUP_TEXT = 0x41
    DELIVERY_RECEIPT = 0x80


class DeliveryType(Enum):
    # 0 and 5..255 are invalid on the wire
    RECEIVED = 0x01
    READ = 0x02
    ACKNOWLEDGED = 0x03
    DECLINED = 0x04


# Byte strings

class FixedSize(bytes):
    """A fixed size bytes buffer"""

    _size_: ClassVar[int] = NotImplemented

    def __init_subclass__(cls, *, size: int = NotImplemented, **kw: object) -> None:
        if size is not NotImplemented:
            cls._size_ = size
        super().__init_subclass__(**kw)

    @overload
    def __new__(cls) -> Self: ...

    @overload
    def __new__(cls, o: Iterable[SupportsIndex] | SupportsIndex | SupportsBytes | Buffer, /) -> Self: ...

    @overload
    def __new__(cls, string: str, /, encoding: str, errors: str = ...) -> Self: ...

    def __new__(cls, *args, **kw):
        if cls._size_ is NotImplemented:
            raise TypeError(f'Cannot instantiate fixed size bytes type {cls.__qualname__!r} that does not define its size')
        instance = super().__new__(cls, *args, **kw)
        if len(instance) != cls._size_:
            raise ValueError(f'{cls.__qualname__!r} objects must have {cls._size_} bytes')
        return instance

    def __repr__(self) -> str:
        return f'{self.__class__.__qualname__}({super().__repr__()})'

    @classmethod
    def from_wire(cls, buffer: WireData) -> Self:
        if cls._size_ is NotImplemented:
            raise TypeError(f'Cannot instantiate fixed size bytes type {cls.__qualname__!r} that does not define its size')
        data = _read_exactly(buffer, cls._size_)
        if len(data) < cls._size_:
            raise ValueError(f'Insufficient data in buffer to extract {cls.__qualname__!r}')
        return cls(data)

    @classmethod
    def from_hex(cls, value: str) -> Self:
        if len(value) != 2 * cls._size_:
            raise ValueError(f'{cls.__qualname__!r} must have {2 * cls._size_} hex characters, got {len(value)}')
        try:
            return cls(bytes.fromhex(value))
        except ValueError as exc:
            raise ValueError(f'Invalid hex value for {cls.__qualname__!r}: {exc}') from exc

    def to_wire(self) -> bytes:
        return bytes(self)

    def wire_length(self) -> int:
        return self._size_


class RandomFixedSize(FixedSize):
    @classmethod
    def generate(cls) -> Self:
        return cls(secure_random_bytes(cls._size_))


# IDs

class MessageID(RandomFixedSize, size=8):
    def __repr__(self) -> str:
        return f'<{self.__class__.__qualname__}: {self.hex()}>'


class GroupID(RandomFixedSize, size=8):
    def __repr__(self) -> str:
        return f'<{self.__class__.__qualname__}: {self.hex()}>'


class BlobID(FixedSize, size=16):
    def __repr__(self) -> str:
        return f'<{self.__class__.__qualname__}: {self.hex()}>'


# Cryptographic material

class Nonce(RandomFixedSize, size=24):
    def __repr__(self) -> str:
        return f'<{self.__class__.__qualname__}: {self.hex()}>'


class PublicKey(FixedSize, size=32):
    def __repr__(self) -> str:
        return f'<{self.__class__.__qualname__}: {self.hex()}>'


class SecretKey(RandomFixedSize, size=32):
    def __repr__(self) -> str:
        return f'<{self.__class__.__qualname__}>'  # never reveal the key material

    @property
    def public_key(self) -> PublicKey:
        return PublicKey(crypto_scalarmult_base(bytes(self)))


class SharedKey(RandomFixedSize, size=32):
    def __repr__(self) -> str:
        return f'<{self.__class__.__qualname__}>'


# List types

class List[T: DataWireProtocol](list[T]):
    """A list of items that extends to the end of the data, without a length prefix"""

    _type_: type[T] = NotImplementedType

    def __init_subclass__(cls, *, custom_repr: bool = True, **kw: object) -> None:
        if not custom_repr:
            cls.__repr__ = list.__repr__  # type: ignore[method-assign]
        for base in getattr(cls, '__orig_bases__', ()):
            if isinstance(base, GenericAlias) and isinstance(base.__origin__, type) and issubclass(base.__origin__, List):
                match base.__args__[0]:
                    case TypeVar():
                        pass  # new type is still generic
                    case type() as list_type:
                        cls._type_ = list_type
                    case _:
                        raise TypeError(f'The {cls.__qualname__!r} type can only be parameterized with a single base type or a type variable')
        super().__init_subclass__(**kw)

    def __init__(self, iterable: Iterable[T] = (), /) -> None:
        if self._type_ is NotImplementedType:
            raise TypeError(f'Cannot instantiate abstract list {self.__class__.__qualname__!r} that does not define its item type')
        super().__init__(iterable)

    def __repr__(self) -> str:
        return f'{self.__class__.__name__}({super().__repr__()})'

    @classmethod
    def from_wire(cls, buffer: WireData) -> Self:
        if cls._type_ is NotImplementedType:
            raise TypeError(f'Cannot instantiate abstract list {cls.__qualname__!r} that does not define its item type')
        if not isinstance(buffer, BytesIO):
            buffer = BytesIO(buffer)
        buffer_length = len(buffer.getvalue())
        items = []
        while buffer.tell() < buffer_length:
            item = cls._type_.from_wire(buffer)
            items.append(item)
        return cls(items)

    def to_wire(self) -> bytes:
        return b''.join(item.to_wire() for item in self)

    def wire_length(self) -> int:
        return sum(item.wire_length() for item in self)


def make_list_type[T: DataWireProtocol](item_type: type[T], *, custom_repr: bool = True) -> type[List[T]]:
    return new_class(f'{item_type.__name__}List', (List[item_type],), kwds={'custom_repr': custom_repr})  # type: ignore[valid-type]
