# SPDX-FileCopyrightText: 2020-present Dan Pascu <dan@aethereal.link>
#
# SPDX-License-Identifier: AGPL-3.0-or-later

"""
Gateway callback authentication.

   The gateway delivers incoming messages by posting a form to a callback
   URL with the following fields:

     from       sender identity (8 characters)
     to         gateway identity (8 characters, usually starts with '*')
     messageId  message id assigned by the sender (8 bytes, hex encoded)
     date       message date set by the sender (UNIX timestamp)
     nonce      nonce used for encryption (24 bytes, hex encoded)
     box        encrypted message (at most 4000 bytes, hex encoded)
     mac        HMAC-SHA256 of from, to, messageId, date, nonce and box,
                keyed with the API secret (32 bytes, hex encoded)
     nickname   public nickname of the sender (optional)

   The MAC is computed over the fields exactly as they were received, so
   it is verified before any of them is decoded. The nickname is not part
   of the MAC and cannot be trusted.

"""

from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from string import digits, hexdigits
from typing import Self

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, hmac

from threema.crypto import EncryptedMessage
from threema.messages.datamodel import MessageID, Nonce
from threema.messages.exceptions import MacMismatchError, MalformedInputError

__all__ = 'CallbackFields', 'EncryptedCallback', 'compute_mac', 'verify_mac', 'read_callback'  # noqa: RUF022


IDENTITY_LENGTH = 8
MAX_BOX_SIZE = 4000
MAX_NICKNAME_LENGTH = 32


def _fixed_length_field(form: Mapping[str, str], name: str, length: int, *, hexadecimal: bool = False) -> str:
    value = form.get(name, '')
    if not value:
        raise MalformedInputError(f'The {name!r} field is missing or empty')
    if len(value) != length:
        raise MalformedInputError(f'The {name!r} field must have {length} characters, got {len(value)}')
    if hexadecimal and not all(char in hexdigits for char in value):
        raise MalformedInputError(f'The {name!r} field must be hex encoded')
    return value


def _non_empty_field(form: Mapping[str, str], name: str) -> str:
    value = form.get(name, '')
    if not value:
        raise MalformedInputError(f'The {name!r} field is missing or empty')
    return value


@dataclass(frozen=True)
class CallbackFields:
    """The callback fields as they were received, before any decoding"""

    sender: str
    recipient: str
    message_id: str
    date: str
    nonce: str
    box: str
    mac: str
    nickname: str = ''

    @classmethod
    def from_form(cls, form: Mapping[str, str]) -> Self:
        return cls(
            sender=_fixed_length_field(form, 'from', IDENTITY_LENGTH),
            recipient=_fixed_length_field(form, 'to', IDENTITY_LENGTH),
            message_id=_fixed_length_field(form, 'messageId', 2 * MessageID._size_, hexadecimal=True),
            date=_non_empty_field(form, 'date'),
            nonce=_fixed_length_field(form, 'nonce', 2 * Nonce._size_, hexadecimal=True),
            box=_non_empty_field(form, 'box'),
            mac=_fixed_length_field(form, 'mac', 2 * hashes.SHA256.digest_size, hexadecimal=True),
            nickname=form.get('nickname', '')[:MAX_NICKNAME_LENGTH],
        )

    @property
    def authenticated_values(self) -> tuple[str, ...]:
        return self.sender, self.recipient, self.message_id, self.date, self.nonce, self.box


@dataclass(frozen=True)
class EncryptedCallback:
    """An authenticated callback, with its fields decoded"""

    sender: str
    recipient: str
    message_id: MessageID
    date: datetime
    nonce: Nonce
    box: bytes
    nickname: str = ''

    @property
    def encrypted_message(self) -> EncryptedMessage:
        return EncryptedMessage(nonce=self.nonce, box=self.box)


def _mac_context(fields: CallbackFields, api_secret: str | bytes) -> hmac.HMAC:
    key = api_secret.encode() if isinstance(api_secret, str) else api_secret
    context = hmac.HMAC(key, hashes.SHA256())
    for value in fields.authenticated_values:
        context.update(value.encode())
    return context


def compute_mac(fields: CallbackFields, api_secret: str | bytes) -> bytes:
    return _mac_context(fields, api_secret).finalize()


def verify_mac(fields: CallbackFields, provided_mac: bytes, api_secret: str | bytes) -> None:
    """Verify the MAC in constant time. Raises MacMismatchError if it does not match."""
    try:
        _mac_context(fields, api_secret).verify(provided_mac)
    except InvalidSignature as exc:
        raise MacMismatchError('The callback MAC does not match') from exc


def read_callback(form: Mapping[str, str], api_secret: str | bytes) -> EncryptedCallback:
    """
    Authenticate and decode a callback form.

    Raises MalformedInputError if a field is missing or malformed and
    MacMismatchError if the MAC does not verify. The fields are only
    decoded after the MAC was verified.
    """
    fields = CallbackFields.from_form(form)
    verify_mac(fields, bytes.fromhex(fields.mac), api_secret)

    # ASCII decimal digits with an optional leading minus sign
    seconds = fields.date.removeprefix('-')
    if not seconds or not all(char in digits for char in seconds):
        raise MalformedInputError(f'The callback date is not a UNIX timestamp: {fields.date!r}')
    try:
        date = datetime.fromtimestamp(int(fields.date), tz=UTC)
    except (OverflowError, OSError, ValueError) as exc:
        raise MalformedInputError(f'The callback date is out of range: {fields.date}') from exc

    if len(fields.box) % 2 or not all(char in hexdigits for char in fields.box):
        raise MalformedInputError('The callback box is not hex encoded')
    box = bytes.fromhex(fields.box)
    if len(box) > MAX_BOX_SIZE:
        raise MalformedInputError(f'The callback box is too big ({len(box)} > {MAX_BOX_SIZE} bytes)')

    return EncryptedCallback(
        sender=fields.sender,
        recipient=fields.recipient,
        message_id=MessageID.from_hex(fields.message_id),
        date=date,
        nonce=Nonce.from_hex(fields.nonce),
        box=box,
        nickname=fields.nickname,
    )
