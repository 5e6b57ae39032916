# chunkvault

Building blocks for a deduplicating backup tool. chunkvault names each chunk of
data by a keyed hash. It compresses and encrypts chunks, and moves them to and
from a storage backend with several worker threads at once. It also describes
files, directories and symlinks as snapshot entries and lists local directories
in snapshot order.

## Installation

```
pip install chunkvault
```

To run the test suite, install the `test` extra:

```
pip install "chunkvault[test]"
pytest
```

## Modules

- `chunkvault.config`: `Config` holds the chunking parameters and the keys used
  to hash, name and encrypt chunks.
  - `create_config()` returns a configuration with the default keys and
    compression level.
  - `create_config_from_parameters(...)` builds a configuration for a new
    storage. It generates random keys when encryption is on. It can also copy
    the parameters and keys of another configuration.
  - `Config.to_json()` and `config_from_json()` convert a configuration to JSON
    and back. `config_from_json()` raises `ConfigError` on bad input.
  - `Config.is_compatible_with()` tells whether chunks can be copied between two
    storages.
  - `Config.new_keyed_hasher()`, `Config.new_file_hasher()` and
    `Config.compute_file_hash()` give access to the hashers.
  - `Config.get_chunk_id_from_hash()` derives the public chunk id from a chunk
    hash.
  - Hashing follows the compression level. The default level (100) uses keyed
    BLAKE2b and LZ4. The levels -1 to 9 use HMAC-SHA256 and zlib.
- `chunkvault.chunk`: `Chunk` collects data and computes its hash (`hash()`) and
  id (`id()`).
  - `Chunk.encrypt()` compresses the data. When the key is not empty, it also
    encrypts the data with AES-GCM and pads it to a multiple of 256 bytes.
  - `Chunk.decrypt()` reverses `encrypt()` and hashes the plain data again.
  - Errors raise `ChunkError`.
- `chunkvault.uploader`: `ChunkUploader` uploads chunks with a pool of threads.
  - A chunk is encrypted only when the storage does not have it yet.
  - A completion callback is called for each chunk.
  - `stop()` waits for pending uploads and re-raises the first worker error.
  - The uploader can be used as a context manager.
- `chunkvault.downloader`: `ChunkDownloader` downloads chunks with a pool of
  threads.
  - `add_files()` and `add_chunk()` build the download list.
  - `wait_for_chunk()` returns a chunk once it has been downloaded and verified,
    and prefetches the chunks needed next.
  - A fossil is moved back to a chunk before it is downloaded.
  - Downloads are retried up to three times.
- `chunkvault.operator`: `ChunkOperator` finds, deletes, fossilizes and
  resurrects chunks with a pool of threads.
  - Fossil paths are collected in `fossils`.
- `chunkvault.entry`: `Entry` describes a file, directory or symlink in a
  snapshot.
  - `Entry.to_json()` and `entry_from_json()` convert an entry to its snapshot
    JSON and back. `entry_from_json()` raises `EntryError` on bad input.
  - `Entry.compare()` and `sort_by_name()` order entries so that files come
    before the subdirectories of the same parent.
  - `sort_by_chunk()` orders entries by their first chunk.
  - `Entry.restore_metadata()` applies the owner, permissions and modification
    time to a file.
  - `Entry.diff()` counts the bytes of a file that changed between two chunk
    sequences.
  - `list_entries()` lists one directory and returns a `Listing` of files,
    subdirectories and skipped paths.

Worker errors are logged through the standard `logging` module under the module
names. Two environment variables change hashing:

- `DUPLICACY_SKIP_FILE_HASH` turns file hashes off.
- `DUPLICACY_DECRYPT_WITH_HMACSHA256` derives decryption keys with HMAC-SHA256.

## Storage objects

The uploader, downloader and operator take a storage object that you supply. It
provides:

- `find_chunk(thread_index, chunk_id, is_fossil)`, which returns
  `(path, exists, size)`
- `upload_file(thread_index, path, content)`
- `download_file(thread_index, path, chunk)`, which writes the content into
  `chunk`
- `move_file(thread_index, from_path, to_path)`
- `delete_file(thread_index, path)`
- `is_cache_needed()`

A storage that sets `may_miss_existing_chunks` to true makes the downloader
retry a chunk that was reported missing.

## Example

```python
from chunkvault.chunk import Chunk
from chunkvault.config import create_config_from_parameters

config = create_config_from_parameters(
    100, 4 * 1024 * 1024, 16 * 1024 * 1024, 1024 * 1024, True, None, False
)

chunk = Chunk(config)
chunk.reset(True)
chunk.write(b"some data " * 1000)
chunk_hash, chunk_id = chunk.hash(), chunk.id()

chunk.encrypt(config.chunk_key, chunk_hash)
stored = chunk.data()

restored = Chunk(config)
restored.reset(False)
restored.write(stored)
restored.decrypt(config.chunk_key, chunk_hash)
assert restored.id() == chunk_id
```

## What chunkvault does not do

chunkvault does not:

- split streams into content-defined chunks; the `chunk_seed` and chunk size
  settings in `Config` are stored but not used by any module here
- include storage backends
- create, upload or restore snapshots
- provide a command-line program

The caller supplies the chunks and the storage object.