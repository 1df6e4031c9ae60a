# SPDX-FileCopyrightText: 2020-present Dan Pascu <dan@aethereal.link>
#
# SPDX-License-Identifier: AGPL-3.0-or-later

import logging
from collections.abc import Mapping

from threema.aio import Channel, ClosedResourceError, WouldBlock

from . import EncryptedCallback, read_callback

__all__ = 'CallbackQueue',  # noqa: COM818


log = logging.getLogger(__name__)


class CallbackQueue(Channel[EncryptedCallback]):
    """
    A bounded queue of authenticated callbacks.

    Offering a callback never blocks the request handler that received it.
    When the queue is full or closed, the callback is dropped and a warning
    is logged. Consumers receive the callbacks by iterating the queue.
    """

    def __init__(self, buffer_size: int = 100) -> None:
        super().__init__(buffer_size)
        self.dropped = 0

    def offer(self, callback: EncryptedCallback) -> bool:
        try:
            self.send_nowait(callback)
        except WouldBlock:
            self.dropped += 1
            log.warning('Callback queue is full, dropping message %s from %s', callback.message_id.hex(), callback.sender)
            return False
        except ClosedResourceError:
            self.dropped += 1
            log.warning('Callback queue is closed, dropping message %s from %s', callback.message_id.hex(), callback.sender)
            return False
        log.debug('Queued message %s from %s', callback.message_id.hex(), callback.sender)
        return True

    def offer_form(self, form: Mapping[str, str], api_secret: str | bytes) -> bool:
        """Authenticate a callback form and queue it. Errors from reading the form propagate to the caller."""
        return self.offer(read_callback(form, api_secret))
