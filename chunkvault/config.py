"""Storage configuration: chunking parameters, keys and hashing primitives."""

from __future__ import annotations

import hashlib
import hmac
import json
import os
from dataclasses import dataclass, field
from typing import Any, Protocol

DEFAULT_KEY = b"duplicacy"
"""Key used for hashing and chunk ids when encryption is turned off."""

DEFAULT_COMPRESSION_LEVEL = 100
"""LZ4 compression with BLAKE2 hashing; levels -1 to 9 select zlib with HMAC-SHA256."""

CONFIG_HEADER = b"duplicacy\x01"
"""Header of an encrypted config file that carries its own salt and iteration count."""

CONFIG_SALT_LENGTH = 32
CONFIG_DEFAULT_ITERATIONS = 16384

_MAX_BLAKE2B_KEY = 64
_KEY_LENGTH = 32


def _env_flag(name: str) -> bool:
    value = os.environ.get(name)
    return value is not None and value not in ("", "0")


SKIP_FILE_HASH = _env_flag("DUPLICACY_SKIP_FILE_HASH")
"""When set, file hashes are not computed and come out as empty strings."""


class ConfigError(ValueError):
    """Raised when a configuration cannot be parsed or used."""


class Hasher(Protocol):
    def update(self, data: bytes) -> None: ...

    def digest(self) -> bytes: ...

    def hexdigest(self) -> str: ...


class _DummyHasher:
    """A hasher that ignores its input and yields an empty digest."""

    def update(self, data: bytes) -> None:
        pass

    def digest(self) -> bytes:
        return b""

    def hexdigest(self) -> str:
        return ""


_JSON_FIELDS = {
    "compression-level": "compression_level",
    "average-chunk-size": "average_chunk_size",
    "max-chunk-size": "maximum_chunk_size",
    "min-chunk-size": "minimum_chunk_size",
}

_KEY_FIELDS = {
    "chunk-seed": ("chunk_seed", "chunk seed"),
    "hash-key": ("hash_key", "hash key"),
    "id-key": ("id_key", "id key"),
    "chunk-key": ("chunk_key", "chunk key"),
    "file-key": ("file_key", "file key"),
}


@dataclass
class Config:
    """Parameters and keys that describe how a storage holds its chunks."""

    compression_level: int = DEFAULT_COMPRESSION_LEVEL
    average_chunk_size: int = 0
    maximum_chunk_size: int = 0
    minimum_chunk_size: int = 0
    chunk_seed: bytes = b""
    fixed_nesting: bool = False
    hash_key: bytes = field(default=b"", repr=False)
    id_key: bytes = field(default=b"", repr=False)
    chunk_key: bytes = field(default=b"", repr=False)
    file_key: bytes = field(default=b"", repr=False)
    dry_run: bool = field(default=False, compare=False)

    def to_json(self) -> str:
        """Return the JSON description stored in the config file."""
        document: dict[str, Any] = {
            "compression-level": self.compression_level,
            "average-chunk-size": self.average_chunk_size,
            "max-chunk-size": self.maximum_chunk_size,
            "min-chunk-size": self.minimum_chunk_size,
            "fixed-nesting": self.fixed_nesting,
        }
        for name, (attribute, _) in _KEY_FIELDS.items():
            document[name] = getattr(self, attribute).hex()
        return json.dumps(document, indent=4)

    def is_compatible_with(self, other: Config) -> bool:
        """Whether chunks from this storage can be copied to the other one."""
        return (
            self.compression_level == other.compression_level
            and self.average_chunk_size == other.average_chunk_size
            and self.maximum_chunk_size == other.maximum_chunk_size
            and self.minimum_chunk_size == other.minimum_chunk_size
            and self.chunk_seed == other.chunk_seed
            and self.hash_key == other.hash_key
        )

    def new_keyed_hasher(self, key: bytes) -> Hasher:
        """Return a keyed 32-byte hasher: BLAKE2b or HMAC-SHA256 by compression level."""
        key = bytes(key)
        if self.compression_level == DEFAULT_COMPRESSION_LEVEL:
            if len(key) > _MAX_BLAKE2B_KEY:
                raise ConfigError(f"Invalid hash key: {key.hex()}")
            return hashlib.blake2b(key=key, digest_size=32)
        return hmac.new(key, digestmod=hashlib.sha256)

    def new_file_hasher(self) -> Hasher:
        """Return the hasher used for whole-file hashes."""
        if SKIP_FILE_HASH:
            return _DummyHasher()
        if self.compression_level == DEFAULT_COMPRESSION_LEVEL:
            return hashlib.blake2b(digest_size=32)
        return hashlib.sha256()

    def compute_file_hash(self, path: str | os.PathLike[str]) -> str:
        """Return the hex file hash of the file at path, or "" if it cannot be read."""
        try:
            with open(path, "rb") as stream:
                hasher = self.new_file_hasher()
                for block in iter(lambda: stream.read(64 * 1024), b""):
                    hasher.update(block)
        except OSError:
            return ""
        return hasher.hexdigest()

    def get_chunk_id_from_hash(self, chunk_hash: bytes | str) -> str:
        """Derive the public chunk id (used as the chunk file name) from a chunk hash."""
        if isinstance(chunk_hash, str):
            chunk_hash = chunk_hash.encode("utf-8")
        hasher = self.new_keyed_hasher(self.id_key)
        hasher.update(chunk_hash)
        return hasher.hexdigest()

    def __str__(self) -> str:
        return "\n".join(
            [
                f"Compression level: {self.compression_level}",
                f"Average chunk size: {self.average_chunk_size}",
                f"Maximum chunk size: {self.maximum_chunk_size}",
                f"Minimum chunk size: {self.minimum_chunk_size}",
                f"Chunk seed: {self.chunk_seed.hex()}",
            ]
        )


def config_from_json(description: bytes | str) -> Config:
    """Parse the JSON description of a config file."""
    try:
        document = json.loads(description)
    except (ValueError, UnicodeDecodeError) as error:
        raise ConfigError(f"Failed to parse the config file: {error}") from error
    if not isinstance(document, dict):
        raise ConfigError("Failed to parse the config file: not a JSON object")

    config = create_config()

    for name, attribute in _JSON_FIELDS.items():
        if name in document:
            value = document[name]
            if isinstance(value, bool) or not isinstance(value, int):
                raise ConfigError(f"Invalid value of {name} in the config")
            setattr(config, attribute, value)

    if "fixed-nesting" in document:
        value = document["fixed-nesting"]
        if not isinstance(value, bool):
            raise ConfigError("Invalid value of fixed-nesting in the config")
        config.fixed_nesting = value

    for name, (attribute, label) in _KEY_FIELDS.items():
        text = document.get(name, "")
        if text is None:
            text = ""
        if not isinstance(text, str):
            raise ConfigError(f"Invalid representation of the {label} in the config")
        try:
            setattr(config, attribute, bytes.fromhex(text))
        except ValueError as error:
            raise ConfigError(f"Invalid representation of the {label} in the config") from error

    return config


def create_config() -> Config:
    """Return a config with the default keys and compression level."""
    return Config(hash_key=DEFAULT_KEY, id_key=DEFAULT_KEY, compression_level=DEFAULT_COMPRESSION_LEVEL)


def create_config_from_parameters(
    compression_level: int,
    average_chunk_size: int,
    maximum_chunk_size: int,
    minimum_chunk_size: int,
    is_encrypted: bool,
    copy_from: Config | None,
    bit_copy: bool,
) -> Config:
    """Build a new storage config, generating random keys when encrypted.

    With copy_from, the chunking parameters, seed and hash key are taken from it so
    that the new storage is compatible; with bit_copy the remaining keys are too.
    """
    config = Config(
        compression_level=compression_level,
        average_chunk_size=average_chunk_size,
        maximum_chunk_size=maximum_chunk_size,
        minimum_chunk_size=minimum_chunk_size,
        fixed_nesting=True,
    )

    if is_encrypted:
        keys = os.urandom(_KEY_LENGTH * 5)
        (
            config.chunk_seed,
            config.hash_key,
            config.id_key,
            config.chunk_key,
            config.file_key,
        ) = (keys[i : i + _KEY_LENGTH] for i in range(0, len(keys), _KEY_LENGTH))
    else:
        config.chunk_seed = DEFAULT_KEY
        config.hash_key = DEFAULT_KEY
        config.id_key = DEFAULT_KEY

    if copy_from is not None:
        config.compression_level = copy_from.compression_level
        config.average_chunk_size = copy_from.average_chunk_size
        config.maximum_chunk_size = copy_from.maximum_chunk_size
        config.minimum_chunk_size = copy_from.minimum_chunk_size
        config.chunk_seed = copy_from.chunk_seed
        config.hash_key = copy_from.hash_key
        if bit_copy:
            config.id_key = copy_from.id_key
            config.chunk_key = copy_from.chunk_key
            config.file_key = copy_from.file_key

    return config