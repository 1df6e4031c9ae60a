# SPDX-FileCopyrightText: 2020-present Dan Pascu <dan@aethereal.link>
#
# SPDX-License-Identifier: AGPL-3.0-or-later

"""
End-to-end message structure.

   The messages exchanged between end-to-end clients and the gateway are
   encoded using binary fields, with fixed-width integers in little-endian
   byte order. Before being encrypted, each message is packed as a type
   byte, followed by the message content and by random padding:

     +-------------------------+
     |      Message Type       |  1 byte
     +-------------------------+
     |     Message Content     |  variable, depends on the type
     +-------------------------+
     |         Padding         |  1 to 255 bytes
     +-------------------------+

   The content layout of the known message types:

     Text             raw UTF-8 text
     Image            blob id (16) | size (u32) | nonce (24)
     Voice            seconds (u16) | blob id (16) | size (u32) | shared key (32)
     File             UTF-8 JSON object with single letter keys
     Group text       sender identity (8) | group id (8) | UTF-8 text
     Delivery receipt receipt type (1) | message id (8) * N, N >= 1

   Messages with an unknown type are not an error. They are decoded as an
   opaque OtherMessage, which keeps the type byte and the content as-is,
   so that newer protocol versions do not break older decoders.

"""

import json
from collections.abc import MutableMapping
from io import BytesIO
from typing import ClassVar, Self

from .datamodel import (
    BlobID,
    DeliveryType,
    GroupID,
    IdentityAdapter,
    MessageID,
    MessageType,
    Nonce,
    SharedKey,
    TrailingBytesAdapter,
    TrailingStringAdapter,
    UInt8Adapter,
    UInt16Adapter,
    UInt32Adapter,
    WireData,
)
from .elements import AnnotatedStructure, Element, ListElement
from .exceptions import MalformedInputError, VariantDecodeError
from .padding import generate_padding, remove_padding

__all__ = (  # noqa: RUF022
    # Messages
    'Message',

    'TextMessage',
    'ImageMessage',
    'VoiceMessage',
    'FileMessage',
    'GroupTextMessage',
    'DeliveryReceipt',
    'OtherMessage',

    # Codec
    'pack_message',
    'unpack_message',

    # Helpers
    'quote_text',
)


FILE_FORMAT_VERSION = 0


class OptionalBlobIDAdapter:
    """Validate the optional thumbnail blob id, which only exists inside the JSON content of file messages"""

    _abstract_: ClassVar[bool] = False

    @staticmethod
    def from_wire(buffer: WireData) -> BlobID | None:
        raise TypeError('An optional blob id has no binary wire representation of its own')

    @staticmethod
    def to_wire(value: BlobID | None, /) -> bytes:
        raise TypeError('An optional blob id has no binary wire representation of its own')

    @staticmethod
    def wire_length(value: BlobID | None, /) -> int:
        raise TypeError('An optional blob id has no binary wire representation of its own')

    @staticmethod
    def validate(value: BlobID | None, /) -> BlobID | None:
        if value is not None and not isinstance(value, BlobID):
            raise TypeError(f'Expected {BlobID.__qualname__!r} or None, got {value.__class__.__qualname__!r}')
        return value


# Messages

class Message(AnnotatedStructure):
    # message code 0 is reserved for messages that carry their own type (OtherMessage)
    # the message code should be overridden by subclasses

    _code_: ClassVar[int] = 0
    _registry_: ClassVar[MutableMapping[int, type['Message']]] = {}

    def __init_subclass__(cls, *, code: int = 0, **kw: object) -> None:
        super().__init_subclass__(**kw)
        if cls._code_ != 0 and code == 0:
            raise TypeError('When inheriting a message type with a non-zero code, the new type code must be different from 0')
        UInt8Adapter.validate(code)
        cls._code_ = code
        if code != 0 and cls._registry_.setdefault(code, cls) is not cls:
            raise TypeError(f'Message code 0x{code:02x} is already used by {cls._registry_[code].__qualname__!r}')

    @classmethod
    def lookup(cls, code: int) -> type['Message'] | None:
        return cls._registry_.get(code, None)

    @property
    def message_type(self) -> MessageType | int:
        return MessageType(self._code_)

    @classmethod
    def from_wire(cls, buffer: WireData) -> Self:
        """Read a message from its type byte and content (without padding)"""
        if not isinstance(buffer, BytesIO):
            buffer = BytesIO(buffer)
        if cls._code_ == 0:
            raise TypeError(f'Cannot read abstract message type {cls.__qualname__!r} from wire')
        try:
            code = UInt8Adapter.from_wire(buffer)
        except ValueError as exc:
            raise ValueError(f'Could not read the {cls.__qualname__} type from wire: {exc}') from exc
        if code != cls._code_:
            raise ValueError(f'The message type on wire does not match {cls.__qualname__} (0x{code:02x} != 0x{cls._code_:02x})')
        instance = cls.content_from_wire(buffer)
        if trailing_data := buffer.read():
            raise ValueError(f'Unexpected {len(trailing_data)} bytes of trailing data after {cls.__qualname__}')
        return instance

    def to_wire(self) -> bytes:
        return UInt8Adapter.to_wire(self.message_type) + self.content_to_wire()

    def wire_length(self) -> int:
        return UInt8Adapter._size_ + self.content_wire_length()

    @classmethod
    def content_from_wire(cls, buffer: WireData) -> Self:
        return super().from_wire(buffer)

    def content_to_wire(self) -> bytes:
        return super().to_wire()

    def content_wire_length(self) -> int:
        return super().wire_length()


class TextMessage(Message, code=MessageType.TEXT):
    content: Element[bytes] = Element(bytes, adapter=TrailingBytesAdapter)

    @classmethod
    def from_text(cls, text: str) -> Self:
        return cls(content=text.encode())

    @property
    def text(self) -> str:
        return self.content.decode(errors='replace')


class ImageMessage(Message, code=MessageType.IMAGE):
    blob_id: Element[BlobID] = Element(BlobID)
    size: Element[int] = Element(int, adapter=UInt32Adapter)
    nonce: Element[Nonce] = Element(Nonce)


class VoiceMessage(Message, code=MessageType.VOICE):
    seconds: Element[int] = Element(int, adapter=UInt16Adapter)
    blob_id: Element[BlobID] = Element(BlobID)
    size: Element[int] = Element(int, adapter=UInt32Adapter)
    shared_key: Element[SharedKey] = Element(SharedKey)


class FileMessage(Message, code=MessageType.FILE):
    """
    A file message, which references a file blob and optionally a thumbnail blob.

    The blobs are encrypted with a shared key that is sent along in the message.
    On the wire the content is a JSON object with the following keys:

        b  file blob id (hex)
        t  thumbnail blob id (hex, omitted if there is no thumbnail)
        k  shared key (hex)
        m  mime type
        n  file name (omitted if empty)
        s  file size
        i  format version (currently 0)
        d  description (omitted if empty)

    """

    file_id: Element[BlobID] = Element(BlobID)
    thumbnail_id: Element[BlobID | None] = Element(BlobID | None, default=None, adapter=OptionalBlobIDAdapter)
    shared_key: Element[SharedKey] = Element(SharedKey)
    mime_type: Element[str] = Element(str, default='application/octet-stream', adapter=TrailingStringAdapter)
    file_name: Element[str] = Element(str, default='', adapter=TrailingStringAdapter)
    size: Element[int] = Element(int, adapter=UInt32Adapter)
    description: Element[str] = Element(str, default='', adapter=TrailingStringAdapter)

    @classmethod
    def content_from_wire(cls, buffer: WireData) -> Self:
        data = TrailingBytesAdapter.from_wire(buffer)
        try:
            document = json.loads(data)
        except (ValueError, RecursionError) as exc:  # ValueError covers both JSONDecodeError and UnicodeDecodeError
            raise ValueError(f'Invalid JSON content: {exc}') from exc
        if not isinstance(document, dict):
            raise ValueError(f'The JSON content must be an object, got {document.__class__.__qualname__!r}')
        try:
            return cls(
                file_id=BlobID.from_hex(cls._json_value(document, 'b', str)),
                thumbnail_id=BlobID.from_hex(thumbnail) if (thumbnail := cls._json_value(document, 't', str, default='')) else None,
                shared_key=SharedKey.from_hex(cls._json_value(document, 'k', str)),
                mime_type=cls._json_value(document, 'm', str, default=''),
                file_name=cls._json_value(document, 'n', str, default=''),
                size=cls._json_value(document, 's', int, default=0),
                description=cls._json_value(document, 'd', str, default=''),
            )
        except TypeError as exc:
            raise ValueError(str(exc)) from exc

    def content_to_wire(self) -> bytes:
        document: dict[str, str | int] = {'b': self.file_id.hex()}
        if self.thumbnail_id is not None:
            document['t'] = self.thumbnail_id.hex()
        document['k'] = self.shared_key.hex()
        document['m'] = self.mime_type
        if self.file_name:
            document['n'] = self.file_name
        document['s'] = self.size
        document['i'] = FILE_FORMAT_VERSION
        if self.description:
            document['d'] = self.description
        return json.dumps(document, ensure_ascii=False, separators=(',', ':')).encode()

    def content_wire_length(self) -> int:
        return len(self.content_to_wire())

    @staticmethod
    def _json_value[T](document: dict, key: str, value_type: type[T], *, default: T = NotImplemented) -> T:
        try:
            value = document[key]
        except KeyError:
            if default is NotImplemented:
                raise ValueError(f'The {key!r} key is missing from the JSON content') from None
            return default
        # bool is a subclass of int, but it is not a valid JSON value for the integer fields
        if not isinstance(value, value_type) or isinstance(value, bool):
            raise ValueError(f'The {key!r} key in the JSON content must be of type {value_type.__qualname__!r}, got {value!r}')
        return value


class GroupTextMessage(Message, code=MessageType.GROUP_TEXT):
    sender_id: Element[str] = Element(str, adapter=IdentityAdapter)
    group_id: Element[GroupID] = Element(GroupID)
    content: Element[str] = Element(str, default='', adapter=TrailingStringAdapter)


class DeliveryReceipt(Message, code=MessageType.DELIVERY_RECEIPT):
    delivery_type: Element[DeliveryType] = Element(DeliveryType)
    message_ids: ListElement[MessageID] = ListElement(MessageID, minsize=1)


class OtherMessage(Message):
    """
    A message with a type that is not known to this implementation.

    The type byte and the content are kept as they were found on the wire.
    """

    raw_type: Element[int] = Element(int, adapter=UInt8Adapter)
    content: Element[bytes] = Element(bytes, default=b'', adapter=TrailingBytesAdapter)

    def __init__(self, **kw: object) -> None:
        super().__init__(**kw)
        if self.raw_type in self._registry_:
            raise ValueError(f'Message type 0x{self.raw_type:02x} is a known type, use {self._registry_[self.raw_type].__qualname__} instead')

    @property
    def message_type(self) -> MessageType | int:
        return self.raw_type

    @classmethod
    def from_wire(cls, buffer: WireData) -> Self:
        instance = super(Message, cls).from_wire(buffer)
        if instance.raw_type in cls._registry_:
            raise ValueError(f'Message type 0x{instance.raw_type:02x} is a known type and cannot be read as {cls.__qualname__}')
        return instance

    @classmethod
    def content_from_wire(cls, buffer: WireData) -> Self:
        raise TypeError(f'{cls.__qualname__} cannot be read without its type byte, use {cls.__qualname__}.from_wire instead')

    def content_to_wire(self) -> bytes:
        return self.content

    def content_wire_length(self) -> int:
        return len(self.content)


# Codec

def pack_message(message: Message) -> bytes:
    """Pack a message as its type byte, followed by its content and random padding"""
    return message.to_wire() + generate_padding()


def unpack_message(data: bytes | bytearray | memoryview) -> Message:
    """
    Unpack a decrypted message.

    Raises MalformedInputError if data is too short, InvalidPaddingError if the
    padding length is invalid and VariantDecodeError if the content of a known
    message type cannot be decoded. Unknown message types are returned as an
    OtherMessage.
    """
    data = bytes(data)
    if len(data) < 2:  # noqa: PLR2004
        raise MalformedInputError(f'The message is too short ({len(data)} bytes)')
    payload = remove_padding(data)
    code = payload[0]
    message_type = Message.lookup(code)
    if message_type is None:
        return OtherMessage(raw_type=code, content=payload[1:])
    try:
        return message_type.from_wire(payload)
    except ValueError as exc:
        raise VariantDecodeError(code, str(exc)) from exc


# Helpers

def quote_text(sender: str, quote: str, response: str) -> str:
    """Build a text that quotes a previous message from sender, followed by a response"""
    quoted_lines = '\n> '.join(quote.split('\n'))
    return f'> {sender}: {quoted_lines}\n{response}'
