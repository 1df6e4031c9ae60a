# SPDX-FileCopyrightText: 2020-present Dan Pascu <dan@aethereal.link>
#
# SPDX-License-Identifier: AGPL-3.0-or-later

from dataclasses import dataclass

from threema.crypto import FILE_NONCE, THUMBNAIL_NONCE, SharedKeyBlobs, open_symmetric
from threema.messages import ImageMessage, VoiceMessage
from threema.messages.datamodel import BlobID, Nonce, SharedKey, UInt32Adapter

__all__ = 'BlobReference', 'SealedBlob', 'seal_blob', 'open_blob'


@dataclass(frozen=True)
class BlobReference:
    """A reference to an uploaded blob, with the plaintext size and the nonce it was sealed with"""

    blob_id: BlobID
    size: int
    nonce: Nonce

    def __post_init__(self) -> None:
        if not isinstance(self.blob_id, BlobID):
            raise TypeError(f'Expected a {BlobID.__qualname__!r} for blob_id, got {self.blob_id.__class__.__qualname__!r}')
        if not isinstance(self.nonce, Nonce):
            raise TypeError(f'Expected a {Nonce.__qualname__!r} for nonce, got {self.nonce.__class__.__qualname__!r}')
        UInt32Adapter.validate(self.size)

    def image_message(self) -> ImageMessage:
        return ImageMessage(blob_id=self.blob_id, size=self.size, nonce=self.nonce)

    def voice_message(self, seconds: int, shared_key: SharedKey) -> VoiceMessage:
        return VoiceMessage(seconds=seconds, blob_id=self.blob_id, size=self.size, shared_key=shared_key)


@dataclass(frozen=True)
class SealedBlob:
    box: bytes
    nonce: Nonce
    size: int  # plaintext size

    def reference(self, blob_id: BlobID) -> BlobReference:
        return BlobReference(blob_id=blob_id, size=self.size, nonce=self.nonce)


def seal_blob(content: bytes, blobs: SharedKeyBlobs, *, thumbnail: bool = False) -> SealedBlob:
    """Seal a file or thumbnail blob with the shared key of a file transfer, using its fixed nonce"""
    if thumbnail:
        return SealedBlob(box=blobs.seal_thumbnail(content), nonce=THUMBNAIL_NONCE, size=len(content))
    return SealedBlob(box=blobs.seal_file(content), nonce=FILE_NONCE, size=len(content))


def open_blob(box: bytes, shared_key: SharedKey, nonce: Nonce) -> bytes:
    return open_symmetric(box, nonce, shared_key)
