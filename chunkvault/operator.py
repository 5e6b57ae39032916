"""Multi-threaded operations on chunks: find, delete, fossilize and resurrect."""

from __future__ import annotations

import enum
import logging
import queue
import threading
from typing import NamedTuple, Optional, Protocol

logger = logging.getLogger(__name__)

FOSSIL_SUFFIX = ".fsl"


class _ChunkStorage(Protocol):
    def find_chunk(self, thread_index: int, chunk_id: str, is_fossil: bool) -> tuple[str, bool, int]: ...

    def delete_file(self, thread_index: int, file_path: str) -> None: ...

    def move_file(self, thread_index: int, from_path: str, to_path: str) -> None: ...


class ChunkOperation(enum.IntEnum):
    """Operations a ChunkOperator performs."""

    FIND = 0
    DELETE = 1
    FOSSILIZE = 2
    RESURRECT = 3


class _Task(NamedTuple):
    operation: ChunkOperation
    chunk_id: str
    file_path: str


class ChunkOperator:
    """Run chunk operations with a pool of worker threads.

    Paths of chunks turned into fossils are collected in ``fossils``.  Errors
    raised by a worker are re-raised by stop().
    """

    def __init__(self, storage: _ChunkStorage, threads: int = 1) -> None:
        self.storage = storage
        self.threads = max(threads, 1)
        self.fossils: list[str] = []
        self._fossils_lock = threading.Lock()
        self._queue: queue.Queue[Optional[_Task]] = queue.Queue(maxsize=self.threads * 4)
        self._errors: list[BaseException] = []
        self._errors_lock = threading.Lock()
        self._stopped = False
        self._workers = [
            threading.Thread(target=self._work, args=(index,), daemon=True) for index in range(self.threads)
        ]
        for worker in self._workers:
            worker.start()

    def __enter__(self) -> ChunkOperator:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.stop()

    def _work(self, thread_index: int) -> None:
        while True:
            task = self._queue.get()
            try:
                if task is None:
                    return
                try:
                    self.run(thread_index, task.operation, task.chunk_id, task.file_path)
                except Exception as error:  # re-raised from stop()
                    logger.error("Chunk operation %s on %s failed: %s", task.operation.name, task.chunk_id, error)
                    with self._errors_lock:
                        self._errors.append(error)
            finally:
                self._queue.task_done()

    def _add_fossil(self, fossil_path: str) -> None:
        with self._fossils_lock:
            self.fossils.append(fossil_path)

    def add_task(self, operation: ChunkOperation | int, chunk_id: str, file_path: str = "") -> None:
        """Queue an operation; blocks while the queue is full."""
        if self._stopped:
            raise RuntimeError("The chunk operator has been stopped")
        self._queue.put(_Task(ChunkOperation(operation), chunk_id, file_path))

    def find(self, chunk_id: str) -> None:
        """Check that the chunk exists in the storage."""
        self.add_task(ChunkOperation.FIND, chunk_id, "")

    def delete(self, chunk_id: str, file_path: str = "") -> None:
        """Remove the chunk, located first if file_path is empty."""
        self.add_task(ChunkOperation.DELETE, chunk_id, file_path)

    def fossilize(self, chunk_id: str, file_path: str = "") -> None:
        """Turn the chunk into a fossil, located first if file_path is empty."""
        self.add_task(ChunkOperation.FOSSILIZE, chunk_id, file_path)

    def resurrect(self, chunk_id: str, file_path: str) -> None:
        """Turn the fossil at file_path back into a chunk."""
        self.add_task(ChunkOperation.RESURRECT, chunk_id, file_path)

    def stop(self) -> None:
        """Wait for queued operations, stop the workers and raise the first error.

        Calling it again does nothing.
        """
        if self._stopped:
            return
        self._queue.join()
        for _ in self._workers:
            self._queue.put(None)
        for worker in self._workers:
            worker.join()
        self._workers = []
        self._stopped = True
        with self._errors_lock:
            errors, self._errors = self._errors, []
        if errors:
            raise errors[0]

    def run(self, thread_index: int, operation: ChunkOperation | int, chunk_id: str, file_path: str) -> None:
        """Perform one operation in the calling thread."""
        operation = ChunkOperation(operation)
        storage = self.storage

        if operation in (ChunkOperation.DELETE, ChunkOperation.FOSSILIZE) and not file_path:
            chunk_path, exists, _ = storage.find_chunk(thread_index, chunk_id, False)
            if not exists:
                if operation is ChunkOperation.DELETE:
                    logger.warning("Chunk %s does not exist in the storage", chunk_id)
                    return
                fossil_path, fossil_exists, _ = storage.find_chunk(thread_index, chunk_id, True)
                if not fossil_exists:
                    raise FileNotFoundError(f"Chunk {chunk_id} does not exist in the storage")
                logger.warning("Chunk %s is already a fossil", chunk_id)
                self._add_fossil(fossil_path)
                return
            file_path = chunk_path

        if operation is ChunkOperation.FIND:
            _, exists, _ = storage.find_chunk(thread_index, chunk_id, False)
            if not exists:
                raise FileNotFoundError(f"Chunk {chunk_id} does not exist in the storage")
            logger.debug("Chunk %s exists in the storage", chunk_id)

        elif operation is ChunkOperation.DELETE:
            try:
                storage.delete_file(thread_index, file_path)
            except Exception as error:
                logger.warning("Failed to remove the file %s: %s", file_path, error)
                return
            if chunk_id:
                logger.info("The chunk %s has been permanently removed", chunk_id)
            else:
                logger.info("Deleted file %s from the storage", file_path)

        elif operation is ChunkOperation.FOSSILIZE:
            fossil_path = file_path + FOSSIL_SUFFIX
            try:
                storage.move_file(thread_index, file_path, fossil_path)
            except Exception:
                _, fossil_exists, _ = storage.find_chunk(thread_index, chunk_id, True)
                if not fossil_exists:
                    raise
                try:
                    storage.delete_file(thread_index, file_path)
                except Exception as error:
                    logger.debug("Failed to delete chunk file %s: %s", file_path, error)
                else:
                    logger.debug("Deleted chunk file %s as the fossil already exists", chunk_id)
                self._add_fossil(fossil_path)
            else:
                logger.debug("The chunk %s has been marked as a fossil", chunk_id)
                self._add_fossil(fossil_path)

        elif operation is ChunkOperation.RESURRECT:
            chunk_path, exists, _ = storage.find_chunk(thread_index, chunk_id, False)
            if exists:
                try:
                    storage.delete_file(thread_index, file_path)
                except Exception as error:
                    logger.debug("Failed to delete fossil %s: %s", file_path, error)
                logger.info("The chunk %s already exists", chunk_id)
            else:
                storage.move_file(thread_index, file_path, chunk_path)
                logger.info("The chunk %s has been resurrected", file_path)