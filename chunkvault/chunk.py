"""Chunks: byte buffers with keyed hashes, compression and authenticated encryption."""

from __future__ import annotations

import hashlib
import hmac
import os
import zlib

import lz4.block
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from chunkvault.config import DEFAULT_COMPRESSION_LEVEL, Config, ConfigError, Hasher

ENCRYPTION_HEADER = b"duplicacy\x00"
"""Magic word of an encrypted file, followed by a one-byte format version."""

LZ4_MAGIC = b"LZ4 "
_NONCE_SIZE = 12
_PADDING_BLOCK = 256


def _env_flag(name: str) -> bool:
    value = os.environ.get(name)
    return value is not None and value != "0"


DECRYPT_WITH_HMACSHA256 = _env_flag("DUPLICACY_DECRYPT_WITH_HMACSHA256")
"""Derive decryption keys with HMAC-SHA256 instead of the config's keyed hasher."""


class ChunkError(ValueError):
    """Raised when a chunk cannot be encrypted, decrypted or verified."""


def _as_bytes(value: bytes | str | None) -> bytes:
    if value is None:
        return b""
    if isinstance(value, str):
        return value.encode("latin-1")
    return bytes(value)


class Chunk:
    """A buffer of chunk data that tracks its keyed hash and derived id.

    A chunk created without a buffer only counts bytes and hashes them; it is
    used where the hash is needed but the data is not.
    """

    def __init__(self, config: Config, buffer_needed: bool = True) -> None:
        self.config = config
        self._buffer: bytearray | None = bytearray() if buffer_needed else None
        self._size = 0
        self._hasher: Hasher | None = None
        self._hash: bytes | None = None
        self._id = ""

    def reset(self, hash_needed: bool) -> None:
        """Clear the chunk; start a new hash only if hash_needed."""
        if self._buffer is not None:
            self._buffer.clear()
        self._hasher = self.config.new_keyed_hasher(self.config.hash_key) if hash_needed else None
        self._hash = None
        self._id = ""
        self._size = 0

    def write(self, data: bytes) -> int:
        """Append data to the chunk and feed it to the hash, if any."""
        if self._buffer is None:
            self._size += len(data)
        else:
            self._buffer.extend(data)
        if self._hasher is not None:
            self._hasher.update(bytes(data))
        return len(data)

    def data(self) -> bytes:
        """Return the bytes held by the chunk."""
        if self._buffer is None:
            raise ChunkError("A hash-only chunk holds no data")
        return bytes(self._buffer)

    def length(self) -> int:
        """Return the number of bytes written to the chunk."""
        return len(self._buffer) if self._buffer is not None else self._size

    def hash(self) -> bytes:
        """Return the binary keyed hash of the chunk data."""
        if not self._hash:
            if self._hasher is None:
                raise ChunkError("The chunk has no hasher to compute its hash")
            self._hash = self._hasher.digest()
        return self._hash

    def id(self) -> str:
        """Return the hex chunk id derived from the hash with the id key."""
        if not self._id:
            hasher = self.config.new_keyed_hasher(self.config.id_key)
            hasher.update(self.hash())
            self._id = hasher.hexdigest()
        return self._id

    def verify_id(self) -> None:
        """Recompute the id from the buffer and raise ChunkError if it differs."""
        hasher = self.config.new_keyed_hasher(self.config.hash_key)
        hasher.update(self.data())
        id_hasher = self.config.new_keyed_hasher(self.config.id_key)
        id_hasher.update(hasher.digest())
        expected = id_hasher.hexdigest()
        if expected != self.id():
            raise ChunkError(
                f"The chunk id should be {expected} instead of {self.id()}, length: {self.length()}"
            )

    def _derive_key(self, encryption_key: bytes, derivation_key: bytes, for_decryption: bool) -> bytes:
        if not derivation_key:
            return encryption_key
        if for_decryption and DECRYPT_WITH_HMACSHA256:
            hasher: Hasher = hmac.new(derivation_key, digestmod=hashlib.sha256)
        else:
            try:
                hasher = self.config.new_keyed_hasher(derivation_key)
            except ConfigError as error:
                raise ChunkError(str(error)) from error
        hasher.update(encryption_key)
        return hasher.digest()

    @staticmethod
    def _cipher(key: bytes) -> AESGCM:
        try:
            return AESGCM(key)
        except ValueError as error:
            raise ChunkError(f"Invalid encryption key: {error}") from error

    def _compress(self, plain: bytes) -> bytes:
        level = self.config.compression_level
        if -1 <= level <= 9:
            return zlib.compress(plain, level)
        if level == DEFAULT_COMPRESSION_LEVEL:
            try:
                return LZ4_MAGIC + lz4.block.compress(plain, store_size=True)
            except lz4.block.LZ4BlockError as error:
                raise ChunkError(f"LZ4 compression error: {error}") from error
        raise ChunkError(f"Invalid compression level: {level}")

    def encrypt(self, encryption_key: bytes | str | None, derivation_key: bytes | str | None) -> None:
        """Compress, and with a non-empty key encrypt, the data in place.

        With a derivation key the actual key is the config's keyed hash of the
        encryption key under the derivation key.
        """
        encryption_key = _as_bytes(encryption_key)
        derivation_key = _as_bytes(derivation_key)

        cipher = None
        if encryption_key:
            key = self._derive_key(encryption_key, derivation_key, for_decryption=False)
            cipher = self._cipher(key)

        payload = self._compress(self.data())

        if cipher is None:
            self._buffer = bytearray(payload)
            return

        # Maximal PKCS7 padding so compressed sizes leak as little as possible.
        padding_length = _PADDING_BLOCK - len(payload) % _PADDING_BLOCK
        padded = payload + bytes([padding_length % 256]) * padding_length

        nonce = os.urandom(_NONCE_SIZE)
        sealed = cipher.encrypt(nonce, padded, None)
        self._buffer = bytearray(ENCRYPTION_HEADER + nonce + sealed)

    def decrypt(self, encryption_key: bytes | str | None, derivation_key: bytes | str | None) -> None:
        """Reverse encrypt(): decrypt if keyed, decompress, and rehash the plain data."""
        encryption_key = _as_bytes(encryption_key)
        derivation_key = _as_bytes(derivation_key)
        content = self.data()

        if encryption_key:
            key = self._derive_key(encryption_key, derivation_key, for_decryption=True)
            cipher = self._cipher(key)

            header_length = len(ENCRYPTION_HEADER)
            offset = header_length + _NONCE_SIZE
            if len(content) < offset:
                raise ChunkError(f"No enough encrypted data ({len(content)} bytes) provided")
            if content[: header_length - 1] != ENCRYPTION_HEADER[: header_length - 1]:
                raise ChunkError("The storage doesn't seem to be encrypted")
            if content[header_length - 1] != 0:
                raise ChunkError(f"Unsupported encryption version {content[header_length - 1]}")

            nonce = content[header_length:offset]
            try:
                plain = cipher.decrypt(nonce, content[offset:], None)
            except InvalidTag as error:
                raise ChunkError("Message authentication failed") from error

            if not plain:
                raise ChunkError("Incorrect padding length 0 out of 0 bytes")
            padding_length = plain[-1] or _PADDING_BLOCK
            total = offset + len(plain)
            if total <= padding_length:
                raise ChunkError(f"Incorrect padding length {padding_length} out of {total} bytes")
            padding = plain[-padding_length:]
            if len(padding) != padding_length or any(b != padding_length % 256 for b in padding):
                raise ChunkError(f"Incorrect padding of length {padding_length}: {padding.hex()}")
            content = plain[:-padding_length]

        if len(content) > 4 and content[:4] == LZ4_MAGIC:
            decompressed = self._lz4_decode(content[4:])
        else:
            try:
                decompressed = zlib.decompress(content)
            except zlib.error as error:
                raise ChunkError(f"Failed to decompress the chunk: {error}") from error

        self._buffer = bytearray()
        self._size = 0
        self._hasher = self.config.new_keyed_hasher(self.config.hash_key)
        self._hash = None
        self._id = ""
        self.write(decompressed)

    @staticmethod
    def _lz4_decode(block: bytes) -> bytes:
        if len(block) < 4:
            raise ChunkError("LZ4 data is too short")
        if int.from_bytes(block[:4], "little") == 0:
            return b""
        try:
            return lz4.block.decompress(block)
        except lz4.block.LZ4BlockError as error:
            raise ChunkError(f"LZ4 decompression error: {error}") from error