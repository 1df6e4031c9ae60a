# SPDX-FileCopyrightText: 2020-present Dan Pascu <dan@aethereal.link>
#
# SPDX-License-Identifier: AGPL-3.0-or-later

"""
Message padding.

   Every packed message ends with 1 to 255 bytes of padding, which hides
   the real length of the message content from anyone who only sees the
   encrypted box. The padding is self describing: each padding byte holds
   the padding length, so the receiver strips as many bytes as indicated
   by the last byte of the decrypted data.

     +-----------+---------------------+---------------------+
     | type (1)  |   message content   |  padding (N x N)    |
     +-----------+---------------------+---------------------+

"""

from secrets import randbelow

from .exceptions import InvalidPaddingError, RandomSourceFailure

__all__ = 'MAX_PADDING', 'generate_padding', 'remove_padding'


MAX_PADDING = 255


def generate_padding() -> bytes:
    """Return N bytes of value N, with N chosen uniformly from [1, 255]"""
    try:
        length = randbelow(MAX_PADDING) + 1
    except (OSError, NotImplementedError) as exc:
        raise RandomSourceFailure(f'The secure random source failed: {exc}') from exc
    return bytes([length]) * length


def remove_padding(data: bytes) -> bytes:
    """
    Strip the padding from the end of data.

    The padding length is taken from the last byte. It must be non-zero and it
    must leave at least one byte (the message type) in place. The individual
    padding bytes are not checked.
    """
    if not data:
        raise InvalidPaddingError('Cannot remove padding from empty data')
    length = data[-1]
    if length == 0:
        raise InvalidPaddingError('The padding length is 0')
    if length > len(data) - 1:
        raise InvalidPaddingError(f'The padding is longer than the message ({length} > {len(data) - 1})')
    return data[:-length]
