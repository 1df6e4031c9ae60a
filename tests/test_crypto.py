# SPDX-FileCopyrightText: 2020-present Dan Pascu <dan@aethereal.link>
#
# SPDX-License-Identifier: AGPL-3.0-or-later

import dataclasses
from pathlib import Path

import pytest

from threema.blobs import BlobReference, SealedBlob, open_blob, seal_blob
from threema.crypto import (
    FILE_NONCE,
    THUMBNAIL_NONCE,
    EncryptedMessage,
    EncryptionHelper,
    SharedKeyBlobs,
    load_secret_key,
    open_asymmetric,
    open_symmetric,
    read_hex_public_key,
    read_hex_secret_key,
    read_hex_shared_key,
    save_secret_key,
    seal_asymmetric,
    seal_symmetric,
)
from threema.messages import DeliveryReceipt, ImageMessage, TextMessage, VoiceMessage
from threema.messages.datamodel import BlobID, DeliveryType, MessageID, Nonce, PublicKey, SecretKey, SharedKey
from threema.messages.exceptions import AuthenticationFailed, MalformedInputError, SharedKeyExhaustedError


def flip_byte(data: bytes, index: int = 0) -> bytes:
    return data[:index] + bytes([data[index] ^ 0x01]) + data[index + 1:]


class TestEnvelope:

    alice = SecretKey.generate()
    bob = SecretKey.generate()

    def test_asymmetric(self) -> None:
        nonce = Nonce.generate()
        box = seal_asymmetric(b'hello bob', nonce, self.bob.public_key, self.alice)
        assert len(box) == len(b'hello bob') + 16
        assert open_asymmetric(box, nonce, self.alice.public_key, self.bob) == b'hello bob'

        with pytest.raises(AuthenticationFailed, match='Failed to open the box'):
            open_asymmetric(flip_byte(box), nonce, self.alice.public_key, self.bob)
        with pytest.raises(AuthenticationFailed, match='Failed to open the box'):
            open_asymmetric(flip_byte(box, len(box) - 1), nonce, self.alice.public_key, self.bob)
        with pytest.raises(AuthenticationFailed):
            open_asymmetric(box, flip_byte(nonce), self.alice.public_key, self.bob)
        with pytest.raises(AuthenticationFailed):
            open_asymmetric(box, nonce, SecretKey.generate().public_key, self.bob)

    def test_symmetric(self) -> None:
        shared_key = SharedKey.generate()
        nonce = Nonce.generate()
        box = seal_symmetric(b'file content', nonce, shared_key)
        assert open_symmetric(box, nonce, shared_key) == b'file content'

        with pytest.raises(AuthenticationFailed, match='Failed to open the secret box'):
            open_symmetric(flip_byte(box, 20), nonce, shared_key)
        with pytest.raises(AuthenticationFailed):
            open_symmetric(box, nonce, SharedKey.generate())

    def test_blob_nonces(self) -> None:
        assert FILE_NONCE[:-1] == THUMBNAIL_NONCE[:-1] == bytes(23)
        assert FILE_NONCE[-1] == 0x01
        assert THUMBNAIL_NONCE[-1] == 0x02
        assert isinstance(FILE_NONCE, Nonce)
        assert isinstance(THUMBNAIL_NONCE, Nonce)

    def test_shared_key_blobs(self) -> None:
        blobs = SharedKeyBlobs()
        file_box = blobs.seal_file(b'file')
        thumbnail_box = blobs.seal_thumbnail(b'thumbnail')
        assert blobs.exhausted
        assert open_symmetric(file_box, FILE_NONCE, blobs.shared_key) == b'file'
        assert open_symmetric(thumbnail_box, THUMBNAIL_NONCE, blobs.shared_key) == b'thumbnail'

        with pytest.raises(SharedKeyExhaustedError):
            blobs.seal_file(b'third blob')
        with pytest.raises(SharedKeyExhaustedError):
            blobs.seal_thumbnail(b'third blob')

        # each nonce can only be used once, even if the other one is still available
        shared_key = SharedKey.generate()
        blobs = SharedKeyBlobs(shared_key)
        assert blobs.shared_key is shared_key
        blobs.seal_file(b'file')
        assert not blobs.exhausted
        with pytest.raises(SharedKeyExhaustedError):
            blobs.seal_file(b'file again')

    def test_encrypted_message(self) -> None:
        message = EncryptedMessage(nonce=Nonce(bytes(24)), box=b'box data')
        assert message.to_wire() == bytes(24) + b'box data'
        assert EncryptedMessage.from_wire(message.to_wire()) == message

    def test_encryption_helper(self) -> None:
        alice = EncryptionHelper(self.alice)
        bob = EncryptionHelper(self.bob)
        assert alice.public_key == self.alice.public_key

        message = TextMessage.from_text('Hello Bob')
        encrypted_message = alice.encrypt_message(message, bob.public_key)
        assert bob.decrypt_message(encrypted_message, alice.public_key) == message

        receipt = DeliveryReceipt(delivery_type=DeliveryType.READ, message_ids=[MessageID.generate()])
        assert bob.decrypt_message(alice.encrypt_message(receipt, bob.public_key), alice.public_key) == receipt

        # the same message is padded and sealed differently each time
        assert alice.encrypt_message(message, bob.public_key).nonce != encrypted_message.nonce

        nonce = Nonce.generate()
        encrypted_bytes = alice.encrypt_bytes(b'raw', bob.public_key, nonce)
        assert encrypted_bytes.nonce == nonce
        assert bob.decrypt_bytes(encrypted_bytes, alice.public_key) == b'raw'

        tampered_message = EncryptedMessage(nonce=encrypted_message.nonce, box=flip_byte(encrypted_message.box))
        with pytest.raises(AuthenticationFailed):
            bob.decrypt_message(tampered_message, alice.public_key)

        with pytest.raises(TypeError, match="Expected a 'SecretKey'"):
            EncryptionHelper(bytes(32))  # type: ignore[arg-type]
        assert 'SecretKey' not in repr(alice)
        assert EncryptionHelper.from_hex(self.alice.hex()).secret_key == self.alice


class TestKeys:

    def test_hex_readers(self) -> None:
        assert read_hex_public_key('01' * 32) == PublicKey(b'\x01' * 32)
        assert read_hex_secret_key(f' {"02" * 32}\n') == SecretKey(b'\x02' * 32)
        assert isinstance(read_hex_shared_key('03' * 32), SharedKey)

        with pytest.raises(MalformedInputError, match='must have 64 hex characters'):
            read_hex_public_key('01' * 31)
        with pytest.raises(MalformedInputError, match='must have 64 hex characters'):
            read_hex_secret_key('')
        with pytest.raises(MalformedInputError, match='Invalid hex value'):
            read_hex_shared_key('xy' * 32)

    def test_key_files(self, tmp_path: Path) -> None:
        key = SecretKey.generate()
        path = tmp_path / 'gateway.key'
        save_secret_key(key, path)
        assert path.read_text() == key.hex() + '\n'
        assert load_secret_key(path) == key

        # saving again replaces the key
        other_key = SecretKey.generate()
        save_secret_key(other_key, path)
        assert load_secret_key(path) == other_key
        assert [entry.name for entry in tmp_path.iterdir()] == ['gateway.key']

        path.write_text('not a key')
        with pytest.raises(MalformedInputError):
            load_secret_key(path)


class TestBlobs:

    blob_id = BlobID(bytes(range(16)))

    def test_seal_blob(self) -> None:
        blobs = SharedKeyBlobs()
        sealed_file = seal_blob(b'file data', blobs)
        sealed_thumbnail = seal_blob(b'thumbnail data', blobs, thumbnail=True)
        assert isinstance(sealed_file, SealedBlob)
        assert sealed_file.size == len(b'file data')
        assert sealed_file.nonce == FILE_NONCE
        assert sealed_thumbnail.nonce == THUMBNAIL_NONCE
        assert open_blob(sealed_file.box, blobs.shared_key, FILE_NONCE) == b'file data'
        assert open_blob(sealed_thumbnail.box, blobs.shared_key, THUMBNAIL_NONCE) == b'thumbnail data'
        with pytest.raises(AuthenticationFailed):
            open_blob(sealed_file.box, blobs.shared_key, THUMBNAIL_NONCE)

        reference = sealed_file.reference(self.blob_id)
        assert reference == BlobReference(blob_id=self.blob_id, size=9, nonce=FILE_NONCE)

    def test_seal_blob_nonce_reuse(self) -> None:
        # a shared key never seals two blobs with the same nonce
        blobs = SharedKeyBlobs(SharedKey.generate())
        seal_blob(b'first file', blobs)
        with pytest.raises(SharedKeyExhaustedError):
            seal_blob(b'second file', blobs)
        with pytest.raises(SharedKeyExhaustedError):
            seal_blob(b'third file', blobs)
        seal_blob(b'thumbnail', blobs, thumbnail=True)
        with pytest.raises(SharedKeyExhaustedError):
            seal_blob(b'second thumbnail', blobs, thumbnail=True)
        assert blobs.exhausted

    def test_blob_reference(self) -> None:
        nonce = Nonce.generate()
        shared_key = SharedKey.generate()
        reference = BlobReference(blob_id=self.blob_id, size=1024, nonce=nonce)

        assert reference.image_message() == ImageMessage(blob_id=self.blob_id, size=1024, nonce=nonce)
        assert reference.voice_message(seconds=10, shared_key=shared_key) == VoiceMessage(seconds=10, blob_id=self.blob_id, size=1024, shared_key=shared_key)

        with pytest.raises(dataclasses.FrozenInstanceError):
            reference.size = 1  # type: ignore[misc]
        with pytest.raises(ValueError, match='Value is out of range for '):
            BlobReference(blob_id=self.blob_id, size=-1, nonce=nonce)
        with pytest.raises(ValueError, match='Value is out of range for '):
            BlobReference(blob_id=self.blob_id, size=2**32, nonce=nonce)
        with pytest.raises(TypeError, match="Expected a 'BlobID' for blob_id"):
            BlobReference(blob_id=bytes(16), size=1, nonce=nonce)  # type: ignore[arg-type]
        with pytest.raises(TypeError, match="Expected a 'Nonce' for nonce"):
            BlobReference(blob_id=self.blob_id, size=1, nonce=bytes(24))  # type: ignore[arg-type]
