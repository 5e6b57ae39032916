import json

import pytest

from chunkvault import config as config_module
from chunkvault.config import (
    DEFAULT_COMPRESSION_LEVEL,
    DEFAULT_KEY,
    Config,
    ConfigError,
    config_from_json,
    create_config,
    create_config_from_parameters,
)

BLAKE2B_256_EMPTY = "0e5751c026e543b2e8ab2eb06099daa1d1e5df47778f7787faab45cdf12fe3a8"
SHA256_EMPTY = "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"


def test_create_config_defaults():
    config = create_config()
    assert config.hash_key == b"duplicacy"
    assert config.id_key == b"duplicacy"
    assert config.compression_level == 100
    assert config.chunk_key == b""


def test_file_hasher_blake2_for_default_level():
    assert create_config().new_file_hasher().hexdigest() == BLAKE2B_256_EMPTY


def test_file_hasher_sha256_for_zlib_level():
    config = create_config()
    config.compression_level = 6
    assert config.new_file_hasher().hexdigest() == SHA256_EMPTY


def test_skip_file_hash(monkeypatch):
    monkeypatch.setattr(config_module, "SKIP_FILE_HASH", True)
    hasher = create_config().new_file_hasher()
    hasher.update(b"content")
    assert hasher.hexdigest() == ""
    assert hasher.digest() == b""


def test_keyed_hasher_depends_on_key_and_algorithm():
    config = create_config()
    a = config.new_keyed_hasher(b"one")
    b = config.new_keyed_hasher(b"two")
    a.update(b"data")
    b.update(b"data")
    assert len(a.digest()) == 32
    assert a.digest() != b.digest()

    config.compression_level = 6
    c = config.new_keyed_hasher(b"one")
    c.update(b"data")
    assert len(c.digest()) == 32
    assert c.digest() != a.digest()


def test_keyed_hasher_rejects_overlong_key():
    with pytest.raises(ConfigError):
        create_config().new_keyed_hasher(b"k" * 65)


def test_compute_file_hash_empty_and_missing(tmp_path):
    config = create_config()
    empty = tmp_path / "empty"
    empty.write_bytes(b"")
    assert config.compute_file_hash(empty) == BLAKE2B_256_EMPTY
    assert config.compute_file_hash(tmp_path / "missing") == ""


def test_compute_file_hash_matches_file_hasher(tmp_path):
    config = create_config()
    content = bytes(range(256)) * 1000
    path = tmp_path / "data"
    path.write_bytes(content)
    hasher = config.new_file_hasher()
    hasher.update(content)
    assert config.compute_file_hash(path) == hasher.hexdigest()


def test_chunk_id_depends_on_id_key():
    config = create_config()
    chunk_id = config.get_chunk_id_from_hash(b"hash")
    assert len(chunk_id) == 64
    assert config.get_chunk_id_from_hash("hash") == chunk_id
    assert config.get_chunk_id_from_hash(b"other") != chunk_id
    config.id_key = b"another"
    assert config.get_chunk_id_from_hash(b"hash") != chunk_id


def test_json_round_trip_encrypted():
    original = create_config_from_parameters(100, 4096, 16384, 1024, True, None, False)
    restored = config_from_json(original.to_json())
    assert restored == original
    assert restored.file_key == original.file_key


def test_json_field_names_and_hex_encoding():
    config = create_config_from_parameters(100, 4096, 16384, 1024, False, None, False)
    document = json.loads(config.to_json())
    assert document["compression-level"] == 100
    assert document["average-chunk-size"] == 4096
    assert document["max-chunk-size"] == 16384
    assert document["min-chunk-size"] == 1024
    assert document["fixed-nesting"] is True
    assert document["chunk-seed"] == DEFAULT_KEY.hex()
    assert document["chunk-key"] == ""


def test_json_missing_keys_become_empty():
    config = config_from_json('{"average-chunk-size": 4096}')
    assert config.average_chunk_size == 4096
    assert config.compression_level == DEFAULT_COMPRESSION_LEVEL
    assert config.hash_key == b""
    assert config.id_key == b""


@pytest.mark.parametrize(
    "description",
    ['{"hash-key": "zz"}', '{"chunk-seed": 5}', "not json", "[1, 2]", '{"max-chunk-size": "big"}'],
)
def test_json_invalid(description):
    with pytest.raises(ConfigError):
        config_from_json(description)


def test_unencrypted_parameters_use_default_keys():
    config = create_config_from_parameters(100, 4096, 16384, 1024, False, None, False)
    assert config.chunk_seed == DEFAULT_KEY
    assert config.hash_key == DEFAULT_KEY
    assert config.id_key == DEFAULT_KEY
    assert config.chunk_key == b""
    assert config.file_key == b""


def test_encrypted_parameters_generate_distinct_keys():
    config = create_config_from_parameters(100, 4096, 16384, 1024, True, None, False)
    keys = [config.chunk_seed, config.hash_key, config.id_key, config.chunk_key, config.file_key]
    assert all(len(key) == 32 for key in keys)
    assert len(set(keys)) == 5


def test_copy_from_is_compatible():
    source = create_config_from_parameters(100, 4096, 16384, 1024, True, None, False)
    copied = create_config_from_parameters(6, 1024, 2048, 256, True, source, False)
    assert copied.is_compatible_with(source)
    assert copied.average_chunk_size == 4096
    assert copied.id_key != source.id_key

    bit_copied = create_config_from_parameters(6, 1024, 2048, 256, True, source, True)
    assert bit_copied.id_key == source.id_key
    assert bit_copied.chunk_key == source.chunk_key
    assert bit_copied.file_key == source.file_key


def test_incompatible_configs():
    a = create_config_from_parameters(100, 4096, 16384, 1024, True, None, False)
    b = create_config_from_parameters(100, 4096, 16384, 1024, True, None, False)
    assert not a.is_compatible_with(b)
    c = Config(**{**a.__dict__, "minimum_chunk_size": 512})
    assert not a.is_compatible_with(c)