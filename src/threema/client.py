# SPDX-FileCopyrightText: 2020-present Dan Pascu <dan@aethereal.link>
#
# SPDX-License-Identifier: AGPL-3.0-or-later

import logging
import mimetypes
from dataclasses import dataclass
from os import PathLike
from pathlib import Path
from threading import Lock
from typing import TYPE_CHECKING, Protocol, Self

from threema.blobs import BlobReference, open_blob, seal_blob
from threema.callback import EncryptedCallback
from threema.crypto import FILE_NONCE, THUMBNAIL_NONCE, EncryptedMessage, EncryptionHelper, SharedKeyBlobs, open_asymmetric
from threema.messages import FileMessage, ImageMessage, Message, TextMessage
from threema.messages.datamodel import BlobID, IdentityAdapter, PublicKey

if TYPE_CHECKING:
    from threema.configuration import GatewayConfiguration

__all__ = 'Transport', 'PublicKeyStore', 'InMemoryKeyStore', 'FileUpload', 'E2EClient'  # noqa: RUF022


log = logging.getLogger(__name__)


DEFAULT_MIME_TYPE = 'application/octet-stream'


class Transport(Protocol):
    """The gateway HTTP API, as used by the end-to-end client"""

    def lookup_public_key(self, identity: str) -> PublicKey: ...

    def send_encrypted_message(self, recipient: str, encrypted_message: EncryptedMessage) -> str: ...

    def upload_blob(self, data: bytes) -> BlobID: ...

    def download_blob(self, blob_id: BlobID) -> bytes: ...


class PublicKeyStore(Protocol):
    def fetch_public_key(self, identity: str) -> PublicKey | None: ...

    def save_public_key(self, identity: str, public_key: PublicKey) -> None: ...


class InMemoryKeyStore:
    def __init__(self) -> None:
        self._keys: dict[str, PublicKey] = {}
        self._lock = Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._keys)

    def fetch_public_key(self, identity: str) -> PublicKey | None:
        with self._lock:
            return self._keys.get(identity, None)

    def save_public_key(self, identity: str, public_key: PublicKey) -> None:
        with self._lock:
            self._keys[identity] = public_key


@dataclass(frozen=True)
class FileUpload:
    """A file to be sent, with an optional thumbnail"""

    name: str
    content: bytes
    mime_type: str = DEFAULT_MIME_TYPE
    thumbnail: bytes | None = None

    @classmethod
    def from_path(cls, path: str | PathLike[str], *, thumbnail_path: str | PathLike[str] | None = None) -> Self:
        path = Path(path).expanduser()
        mime_type, _ = mimetypes.guess_type(path.name)
        thumbnail = Path(thumbnail_path).expanduser().read_bytes() if thumbnail_path is not None else None
        return cls(name=path.name, content=path.read_bytes(), mime_type=mime_type or DEFAULT_MIME_TYPE, thumbnail=thumbnail)


class E2EClient:
    """
    End-to-end encrypted messaging over a gateway transport.

    Public keys are looked up in the key store first and only fetched from
    the transport if they are not known yet, in which case they are saved
    in the key store for later use.
    """

    def __init__(self, identity: str, encryption_helper: EncryptionHelper, transport: Transport, *, key_store: PublicKeyStore | None = None) -> None:
        self.identity = IdentityAdapter.validate(identity)
        self.encryption_helper = encryption_helper
        self.transport = transport
        self.key_store = key_store

    def __repr__(self) -> str:
        return f'{self.__class__.__qualname__}(identity={self.identity!r}, transport={self.transport!r})'

    @classmethod
    def from_configuration(cls, configuration: 'GatewayConfiguration', transport: Transport, *, key_store: PublicKeyStore | None = None) -> Self:
        return cls(configuration.identity, EncryptionHelper(configuration.secret_key), transport, key_store=key_store)

    def lookup_public_key(self, identity: str) -> PublicKey:
        if self.key_store is not None and (public_key := self.key_store.fetch_public_key(identity)) is not None:
            return public_key
        log.debug('Looking up the public key of %s', identity)
        public_key = self.transport.lookup_public_key(identity)
        if self.key_store is not None:
            self.key_store.save_public_key(identity, public_key)
        return public_key

    # Sending

    def send_message(self, recipient: str, message: Message) -> str:
        public_key = self.lookup_public_key(recipient)
        encrypted_message = self.encryption_helper.encrypt_message(message, public_key)
        message_id = self.transport.send_encrypted_message(recipient, encrypted_message)
        log.debug('Sent %s to %s as %s', message.__class__.__name__, recipient, message_id)
        return message_id

    def send_text(self, recipient: str, text: str) -> str:
        return self.send_message(recipient, TextMessage.from_text(text))

    def prepare_file(self, upload: FileUpload, *, description: str = '') -> FileMessage:
        """Seal and upload a file and its thumbnail under a new shared key, and build the message that references them"""
        blobs = SharedKeyBlobs()
        file_id = self.transport.upload_blob(seal_blob(upload.content, blobs).box)
        thumbnail_id = self.transport.upload_blob(seal_blob(upload.thumbnail, blobs, thumbnail=True).box) if upload.thumbnail is not None else None
        return FileMessage(
            file_id=file_id,
            thumbnail_id=thumbnail_id,
            shared_key=blobs.shared_key,
            mime_type=upload.mime_type or DEFAULT_MIME_TYPE,
            file_name=upload.name,
            size=len(upload.content),
            description=description,
        )

    def send_file(self, recipient: str, upload: FileUpload, *, description: str = '') -> str:
        # look up the public key first, as it doesn't cost any credits (uploading does)
        self.lookup_public_key(recipient)
        return self.send_message(recipient, self.prepare_file(upload, description=description))

    def send_image(self, recipient: str, content: bytes) -> str:
        """Send an image, which is sealed for the recipient as an asymmetric box instead of using a shared key"""
        public_key = self.lookup_public_key(recipient)
        sealed_image = self.encryption_helper.encrypt_bytes(content, public_key)
        reference = BlobReference(blob_id=self.transport.upload_blob(sealed_image.box), size=len(content), nonce=sealed_image.nonce)
        return self.send_message(recipient, reference.image_message())

    # Receiving

    def decrypt_callback(self, callback: EncryptedCallback) -> Message:
        public_key = self.lookup_public_key(callback.sender)
        return self.encryption_helper.decrypt_message(callback.encrypted_message, public_key)

    def download_file(self, message: FileMessage) -> bytes:
        return open_blob(self.transport.download_blob(message.file_id), message.shared_key, FILE_NONCE)

    def download_thumbnail(self, message: FileMessage) -> bytes | None:
        if message.thumbnail_id is None:
            return None
        return open_blob(self.transport.download_blob(message.thumbnail_id), message.shared_key, THUMBNAIL_NONCE)

    def download_image(self, message: ImageMessage, sender: str) -> bytes:
        public_key = self.lookup_public_key(sender)
        return open_asymmetric(self.transport.download_blob(message.blob_id), message.nonce, public_key, self.encryption_helper.secret_key)
