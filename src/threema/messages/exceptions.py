# SPDX-FileCopyrightText: 2020-present Dan Pascu <dan@aethereal.link>
#
# SPDX-License-Identifier: AGPL-3.0-or-later


__all__ = (  # noqa: RUF022
    'DecodeError',
    'MalformedInputError',
    'InvalidPaddingError',
    'VariantDecodeError',
    'AuthenticationFailed',
    'MacMismatchError',
    'RandomSourceFailure',
    'SharedKeyExhaustedError',
)


class DecodeError(ValueError):
    """Base class for errors raised while parsing protocol data."""


class MalformedInputError(DecodeError):
    """Raised when the input has the wrong size or a field cannot be parsed."""


class InvalidPaddingError(DecodeError):
    """Raised when the trailing padding length is zero or longer than the data."""


class VariantDecodeError(MalformedInputError):
    """
    Raised when the content of a known message type cannot be decoded.

    The ``message_type`` attribute holds the type byte of the message
    that failed to decode.

    """

    def __init__(self, message_type: int, reason: str) -> None:
        super().__init__(f'Failed to decode message of type 0x{message_type:02x}: {reason}')
        self.message_type = message_type
        self.reason = reason


class AuthenticationFailed(Exception):  # noqa: N818
    """
    Raised when authenticated data does not verify.

    The data must be rejected as a whole when this is raised, none of it can be trusted.

    """


class MacMismatchError(AuthenticationFailed):
    """Raised when the MAC of an inbound callback does not match its fields."""


class RandomSourceFailure(RuntimeError):  # noqa: N818
    """Raised when the secure random source fails. This is fatal and not retryable."""


class SharedKeyExhaustedError(RuntimeError):
    """Raised when a shared key was asked to seal more blobs than it is allowed to."""
