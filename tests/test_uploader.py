import os
import random
import threading

import pytest

from chunkvault.chunk import Chunk, ChunkError
from chunkvault.config import DEFAULT_COMPRESSION_LEVEL, create_config, create_config_from_parameters
from chunkvault.uploader import ChunkUploader


class MemoryStorage:
    def __init__(self, cache_needed=False):
        self.files = {}
        self.cache_needed = cache_needed
        self.lock = threading.Lock()

    def find_chunk(self, thread_index, chunk_id, is_fossil):
        path = f"chunks/{chunk_id}" + (".fsl" if is_fossil else "")
        with self.lock:
            exists = path in self.files
            size = len(self.files[path]) if exists else 0
        return path, exists, size

    def upload_file(self, thread_index, file_path, content):
        with self.lock:
            self.files[file_path] = bytes(content)

    def is_cache_needed(self):
        return self.cache_needed


class FailingStorage(MemoryStorage):
    def upload_file(self, thread_index, file_path, content):
        raise OSError("upload refused")


class Recorder:
    def __init__(self):
        self.lock = threading.Lock()
        self.calls = []

    def __call__(self, chunk, chunk_index, skipped, chunk_size, upload_size):
        with self.lock:
            self.calls.append((chunk_index, skipped, chunk_size, upload_size))


def make_chunks(config, count, seed=1, max_size=4096):
    rng = random.Random(seed)
    result = []
    for _ in range(count):
        content = os.urandom(rng.randrange(max_size) + 1)
        chunk = Chunk(config, True)
        chunk.reset(True)
        chunk.write(content)
        result.append((chunk, content, chunk.hash(), chunk.id()))
    return result


def restore(config, stored, chunk_hash):
    chunk = Chunk(config, True)
    chunk.reset(False)
    chunk.write(stored)
    chunk.decrypt(config.chunk_key, chunk_hash)
    return chunk


@pytest.mark.parametrize("threads", [1, 4])
def test_upload_round_trip(threads):
    config = create_config()
    config.minimum_chunk_size = 100
    storage = MemoryStorage()
    recorder = Recorder()
    chunks = make_chunks(config, 20)

    uploader = ChunkUploader(config, storage, None, threads, None)
    uploader.completion_func = recorder
    uploader.start()
    for index, (chunk, _, _, _) in enumerate(chunks):
        uploader.start_chunk(chunk, index)
    uploader.stop()

    assert sorted(call[0] for call in recorder.calls) == list(range(20))
    assert all(not call[1] for call in recorder.calls)
    sizes = {call[0]: call[2] for call in recorder.calls}
    for index, (_, content, chunk_hash, chunk_id) in enumerate(chunks):
        assert sizes[index] == len(content)
        restored = restore(config, storage.files[f"chunks/{chunk_id}"], chunk_hash)
        assert restored.data() == content
        assert restored.id() == chunk_id


def test_encrypted_upload_round_trip():
    config = create_config_from_parameters(DEFAULT_COMPRESSION_LEVEL, 1024, 4096, 256, True, None, False)
    storage = MemoryStorage()
    chunks = make_chunks(config, 5, seed=7)

    with ChunkUploader(config, storage, threads=2) as uploader:
        for index, (chunk, _, _, _) in enumerate(chunks):
            uploader.start_chunk(chunk, index)

    for _, content, chunk_hash, chunk_id in chunks:
        stored = storage.files[f"chunks/{chunk_id}"]
        assert stored.startswith(b"duplicacy\x00")
        assert content not in stored
        restored = restore(config, stored, chunk_hash)
        assert restored.data() == content
        assert restored.id() == chunk_id


def test_existing_chunk_is_skipped():
    config = create_config()
    storage = MemoryStorage()
    recorder = Recorder()
    (chunk, content, _, chunk_id), = make_chunks(config, 1)
    storage.files[f"chunks/{chunk_id}"] = b"already here"

    uploader = ChunkUploader(config, storage, completion_func=recorder)
    assert uploader.upload(0, chunk, 3) is False
    assert storage.files[f"chunks/{chunk_id}"] == b"already here"
    assert recorder.calls == [(3, True, len(content), 0)]
    assert chunk.data() == content


def test_new_chunk_reports_upload_size():
    config = create_config()
    storage = MemoryStorage()
    recorder = Recorder()
    (chunk, content, _, chunk_id), = make_chunks(config, 1, seed=3)

    uploader = ChunkUploader(config, storage, completion_func=recorder)
    assert uploader.upload(0, chunk, 0) is True
    stored = storage.files[f"chunks/{chunk_id}"]
    assert recorder.calls == [(0, False, len(content), len(stored))]


def test_dry_run_uploads_nothing():
    config = create_config()
    config.dry_run = True
    storage = MemoryStorage()
    recorder = Recorder()
    (chunk, content, _, _), = make_chunks(config, 1, seed=5)

    uploader = ChunkUploader(config, storage, completion_func=recorder)
    assert uploader.upload(0, chunk, 0) is True
    assert storage.files == {}
    assert len(recorder.calls) == 1
    assert recorder.calls[0][2] == len(content)
    assert recorder.calls[0][3] > 0


def test_snapshot_cache_keeps_plain_copy():
    config = create_config()
    storage = MemoryStorage(cache_needed=True)
    cache = MemoryStorage()
    (chunk, content, _, chunk_id), = make_chunks(config, 1, seed=9)

    uploader = ChunkUploader(config, storage, cache)
    assert uploader.upload(0, chunk, 0) is True
    assert cache.files[f"chunks/{chunk_id}"] == content
    assert storage.files[f"chunks/{chunk_id}"] != content


def test_snapshot_cache_unused_when_storage_needs_none():
    config = create_config()
    storage = MemoryStorage(cache_needed=False)
    cache = MemoryStorage()
    (chunk, _, _, chunk_id), = make_chunks(config, 1, seed=11)

    ChunkUploader(config, storage, cache).upload(0, chunk, 0)
    assert cache.files == {}
    assert f"chunks/{chunk_id}" in storage.files


def test_snapshot_chunk_with_wrong_id_is_rejected():
    config = create_config()
    storage = MemoryStorage()
    cache = MemoryStorage()
    (chunk, _, _, _), = make_chunks(config, 1, seed=13)
    chunk.id()
    chunk.write(b"extra data after the id was computed")

    with pytest.raises(ChunkError):
        ChunkUploader(config, storage, cache).upload(0, chunk, 0)
    assert storage.files == {}


def test_upload_error_is_raised_by_stop():
    config = create_config()
    storage = FailingStorage()
    chunks = make_chunks(config, 3, seed=17)

    uploader = ChunkUploader(config, storage, threads=2)
    uploader.start()
    for index, (chunk, _, _, _) in enumerate(chunks):
        uploader.start_chunk(chunk, index)
    with pytest.raises(OSError, match="upload refused"):
        uploader.stop()
    assert storage.files == {}