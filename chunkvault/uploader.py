"""Multi-threaded uploading of chunks to a storage."""

from __future__ import annotations

import logging
import queue
import threading
from typing import Callable, Optional, Protocol

from chunkvault.chunk import Chunk
from chunkvault.config import Config

logger = logging.getLogger(__name__)

CompletionFunc = Callable[[Chunk, int, bool, int, int], None]


class _ChunkStorage(Protocol):
    def find_chunk(self, thread_index: int, chunk_id: str, is_fossil: bool) -> tuple[str, bool, int]: ...

    def upload_file(self, thread_index: int, file_path: str, content: bytes) -> None: ...

    def is_cache_needed(self) -> bool: ...


class ChunkUploader:
    """Upload chunks with a pool of worker threads.

    Chunks handed to start_chunk() are uploaded by the workers; completion_func
    (chunk, chunk_index, skipped, chunk_size, upload_size) is called for each one.
    Errors raised while uploading are re-raised by stop().
    """

    def __init__(
        self,
        config: Config,
        storage: _ChunkStorage,
        snapshot_cache: Optional[_ChunkStorage] = None,
        threads: int = 1,
        completion_func: Optional[CompletionFunc] = None,
    ) -> None:
        self.config = config
        self.storage = storage
        self.snapshot_cache = snapshot_cache
        self.threads = max(threads, 1)
        self.completion_func = completion_func
        self._queue: queue.Queue[Optional[tuple[Chunk, int]]] = queue.Queue(maxsize=1)
        self._workers: list[threading.Thread] = []
        self._errors: list[BaseException] = []
        self._errors_lock = threading.Lock()

    def __enter__(self) -> ChunkUploader:
        self.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.stop()

    def start(self) -> None:
        """Start the uploading threads."""
        for index in range(self.threads):
            worker = threading.Thread(target=self._work, args=(index,), daemon=True)
            worker.start()
            self._workers.append(worker)

    def _work(self, thread_index: int) -> None:
        while True:
            task = self._queue.get()
            try:
                if task is None:
                    return
                chunk, chunk_index = task
                try:
                    self.upload(thread_index, chunk, chunk_index)
                except Exception as error:  # re-raised from stop()
                    logger.error("Failed to upload chunk %d: %s", chunk_index, error)
                    with self._errors_lock:
                        self._errors.append(error)
            finally:
                self._queue.task_done()

    def start_chunk(self, chunk: Chunk, chunk_index: int) -> None:
        """Hand a chunk to a worker; blocks while all workers are busy."""
        self._queue.put((chunk, chunk_index))

    def stop(self) -> None:
        """Wait for all pending uploads, stop the workers and raise the first error."""
        self._queue.join()
        for _ in self._workers:
            self._queue.put(None)
        for worker in self._workers:
            worker.join()
        self._workers.clear()
        with self._errors_lock:
            errors, self._errors = self._errors, []
        if errors:
            raise errors[0]

    def _save_to_cache(self, thread_index: int, chunk: Chunk, chunk_id: str) -> None:
        cache = self.snapshot_cache
        assert cache is not None
        try:
            chunk_path, exists, _ = cache.find_chunk(thread_index, chunk_id, False)
        except Exception as error:
            logger.warning("Failed to find the cache path for the chunk %s: %s", chunk_id, error)
            return
        if exists:
            logger.debug("Chunk %s already exists in the snapshot cache", chunk_id)
            return
        try:
            cache.upload_file(thread_index, chunk_path, chunk.data())
        except Exception as error:
            logger.warning("Failed to save the chunk %s to the snapshot cache: %s", chunk_id, error)
        else:
            logger.debug("Chunk %s has been saved to the snapshot cache", chunk_id)

    def _complete(self, chunk: Chunk, chunk_index: int, skipped: bool, chunk_size: int, upload_size: int) -> None:
        if self.completion_func is not None:
            self.completion_func(chunk, chunk_index, skipped, chunk_size, upload_size)

    def upload(self, thread_index: int, chunk: Chunk, chunk_index: int) -> bool:
        """Upload one chunk; return False if it already exists in the storage."""
        chunk_size = chunk.length()
        chunk_id = chunk.id()

        if self.snapshot_cache is not None:
            chunk.verify_id()
            if self.storage.is_cache_needed():
                self._save_to_cache(thread_index, chunk, chunk_id)

        chunk_path, exists, _ = self.storage.find_chunk(thread_index, chunk_id, False)
        if exists:
            logger.debug("Chunk %s already exists", chunk_id)
            self._complete(chunk, chunk_index, True, chunk_size, 0)
            return False

        # Encrypt only once it is known that the chunk must be uploaded.
        chunk.encrypt(self.config.chunk_key, chunk.hash())

        if self.config.dry_run:
            logger.debug("Uploading was skipped for chunk %s", chunk_id)
        else:
            self.storage.upload_file(thread_index, chunk_path, chunk.data())
            logger.debug("Chunk %s has been uploaded", chunk_id)

        self._complete(chunk, chunk_index, False, chunk_size, chunk.length())
        return True