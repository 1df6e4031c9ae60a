# SPDX-FileCopyrightText: 2020-present Dan Pascu <dan@aethereal.link>
#
# SPDX-License-Identifier: AGPL-3.0-or-later

from .channel import Channel
from .exceptions import ClosedResourceError, EndOfChannel, WouldBlock

__all__ = 'Channel', 'ClosedResourceError', 'EndOfChannel', 'WouldBlock'
