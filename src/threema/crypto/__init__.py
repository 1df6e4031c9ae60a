# SPDX-FileCopyrightText: 2020-present Dan Pascu <dan@aethereal.link>
#
# SPDX-License-Identifier: AGPL-3.0-or-later

"""
Cryptographic envelope for end-to-end messages and blobs.

   Messages are sealed with the NaCl box construction (Curve25519 key
   agreement with XSalsa20-Poly1305), using the sender's secret key and
   the recipient's public key. Blobs that belong to a file message are
   sealed with the NaCl secret box construction under a shared key that
   is generated for every file transfer and sent inside the message.

   A shared key seals at most two blobs, the file and its thumbnail, with
   two fixed nonces that only differ in their last byte.

"""

from os import PathLike
from pathlib import Path
from tempfile import NamedTemporaryFile
from typing import Self

from nacl.exceptions import CryptoError
from nacl.public import Box
from nacl.public import PrivateKey as BoxSecretKey
from nacl.public import PublicKey as BoxPublicKey
from nacl.secret import SecretBox

from threema.messages import Message, pack_message, unpack_message
from threema.messages.datamodel import FixedSize, Nonce, PublicKey, SecretKey, SharedKey, TrailingBytesAdapter
from threema.messages.elements import AnnotatedStructure, Element
from threema.messages.exceptions import AuthenticationFailed, MalformedInputError, SharedKeyExhaustedError

__all__ = (  # noqa: RUF022
    # Constants
    'FILE_NONCE',
    'THUMBNAIL_NONCE',

    # Envelope
    'seal_asymmetric',
    'open_asymmetric',
    'seal_symmetric',
    'open_symmetric',

    'EncryptedMessage',
    'EncryptionHelper',
    'SharedKeyBlobs',

    # Keys
    'read_hex_public_key',
    'read_hex_secret_key',
    'read_hex_shared_key',
    'load_secret_key',
    'save_secret_key',
)


FILE_NONCE = Nonce(bytes(23) + b'\x01')
THUMBNAIL_NONCE = Nonce(bytes(23) + b'\x02')


# Envelope

def seal_asymmetric(plaintext: bytes, nonce: Nonce, recipient_public_key: PublicKey, sender_secret_key: SecretKey) -> bytes:
    box = Box(BoxSecretKey(bytes(sender_secret_key)), BoxPublicKey(bytes(recipient_public_key)))
    return box.encrypt(plaintext, bytes(nonce)).ciphertext


def open_asymmetric(ciphertext: bytes, nonce: Nonce, sender_public_key: PublicKey, recipient_secret_key: SecretKey) -> bytes:
    """Open a box sealed for the recipient. Raises AuthenticationFailed if the box does not verify."""
    box = Box(BoxSecretKey(bytes(recipient_secret_key)), BoxPublicKey(bytes(sender_public_key)))
    try:
        return box.decrypt(ciphertext, bytes(nonce))
    except CryptoError as exc:
        raise AuthenticationFailed(f'Failed to open the box: {exc}') from exc


def seal_symmetric(plaintext: bytes, nonce: Nonce, shared_key: SharedKey) -> bytes:
    return SecretBox(bytes(shared_key)).encrypt(plaintext, bytes(nonce)).ciphertext


def open_symmetric(ciphertext: bytes, nonce: Nonce, shared_key: SharedKey) -> bytes:
    """Open a secret box. Raises AuthenticationFailed if the box does not verify."""
    try:
        return SecretBox(bytes(shared_key)).decrypt(ciphertext, bytes(nonce))
    except CryptoError as exc:
        raise AuthenticationFailed(f'Failed to open the secret box: {exc}') from exc


class EncryptedMessage(AnnotatedStructure):
    """A sealed message, with the nonce followed by the box on the wire"""

    nonce: Element[Nonce] = Element(Nonce)
    box: Element[bytes] = Element(bytes, adapter=TrailingBytesAdapter)


class EncryptionHelper:
    """Seal and open messages on behalf of the owner of a secret key"""

    def __init__(self, secret_key: SecretKey) -> None:
        if not isinstance(secret_key, SecretKey):
            raise TypeError(f'Expected a {SecretKey.__qualname__!r}, got {secret_key.__class__.__qualname__!r}')
        self.secret_key = secret_key

    def __repr__(self) -> str:
        return f'{self.__class__.__qualname__}(public_key={self.public_key!r})'

    @classmethod
    def from_hex(cls, secret_key: str) -> Self:
        return cls(read_hex_secret_key(secret_key))

    @property
    def public_key(self) -> PublicKey:
        return self.secret_key.public_key

    def encrypt_message(self, message: Message, public_key: PublicKey) -> EncryptedMessage:
        return self.encrypt_bytes(pack_message(message), public_key)

    def encrypt_bytes(self, content: bytes, public_key: PublicKey, nonce: Nonce | None = None) -> EncryptedMessage:
        if nonce is None:
            nonce = Nonce.generate()
        return EncryptedMessage(nonce=nonce, box=seal_asymmetric(content, nonce, public_key, self.secret_key))

    def decrypt_bytes(self, encrypted_message: EncryptedMessage, public_key: PublicKey) -> bytes:
        return open_asymmetric(encrypted_message.box, encrypted_message.nonce, public_key, self.secret_key)

    def decrypt_message(self, encrypted_message: EncryptedMessage, public_key: PublicKey) -> Message:
        return unpack_message(self.decrypt_bytes(encrypted_message, public_key))


class SharedKeyBlobs:
    """
    Seal the blobs of a file transfer with a single shared key.

    The file and the thumbnail are sealed with their own fixed nonce, and
    each of them can be sealed only once. Any further attempt to seal a
    blob with the same shared key raises SharedKeyExhaustedError.
    """

    def __init__(self, shared_key: SharedKey | None = None) -> None:
        self.shared_key = shared_key if shared_key is not None else SharedKey.generate()
        self._available_nonces = {FILE_NONCE: 'file', THUMBNAIL_NONCE: 'thumbnail'}

    def __repr__(self) -> str:
        return f'{self.__class__.__qualname__}(available={list(self._available_nonces.values())!r})'

    @property
    def exhausted(self) -> bool:
        return not self._available_nonces

    def seal_file(self, content: bytes) -> bytes:
        return self._seal(content, FILE_NONCE)

    def seal_thumbnail(self, content: bytes) -> bytes:
        return self._seal(content, THUMBNAIL_NONCE)

    def _seal(self, content: bytes, nonce: Nonce) -> bytes:
        if self._available_nonces.pop(nonce, None) is None:
            raise SharedKeyExhaustedError(f'The shared key was already used to seal a blob with nonce {nonce.hex()}')
        return seal_symmetric(content, nonce, self.shared_key)


# Keys

def _read_hex_key[T: FixedSize](key_type: type[T], value: str) -> T:
    try:
        return key_type.from_hex(value.strip())
    except ValueError as exc:
        raise MalformedInputError(str(exc)) from exc


def read_hex_public_key(value: str) -> PublicKey:
    return _read_hex_key(PublicKey, value)


def read_hex_secret_key(value: str) -> SecretKey:
    return _read_hex_key(SecretKey, value)


def read_hex_shared_key(value: str) -> SharedKey:
    return _read_hex_key(SharedKey, value)


def load_secret_key(path: str | PathLike[str]) -> SecretKey:
    return read_hex_secret_key(Path(path).expanduser().read_text(encoding='ascii'))


def save_secret_key(key: SecretKey, path: str | PathLike[str]) -> None:
    path = Path(path).expanduser()
    with NamedTemporaryFile(dir=path.parent, delete=False) as tempfile:
        tempfile.write(key.hex().encode() + b'\n')
    Path(tempfile.name).replace(path)
