# SPDX-FileCopyrightText: 2020-present Dan Pascu <dan@aethereal.link>
#
# SPDX-License-Identifier: AGPL-3.0-or-later


__all__ = 'WouldBlock', 'ClosedResourceError', 'EndOfChannel'


class WouldBlock(Exception):  # noqa: N818
    """Raised by ``X_nowait`` functions if ``X`` would block."""


class ClosedResourceError(Exception):
    """
    Raised when attempting to send to a channel after it has been closed.

    "Closed" means that close() was called explicitly, or that the channel
    was used as a context manager which was exited.

    """


class EndOfChannel(Exception):  # noqa: N818
    """
    Raised when receiving from a closed :class:`aio.Channel` that has no
    more items left in its buffer.

    """
