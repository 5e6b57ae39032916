"""Multi-threaded downloading of chunks from a storage."""

from __future__ import annotations

import logging
import queue
import threading
import time
from dataclasses import dataclass
from typing import NamedTuple, Optional, Protocol, Sequence

from chunkvault.chunk import Chunk, ChunkError
from chunkvault.config import Config
from chunkvault.entry import Entry

logger = logging.getLogger(__name__)

MAX_DOWNLOAD_ATTEMPTS = 3


class _ChunkStorage(Protocol):
    def find_chunk(self, thread_index: int, chunk_id: str, is_fossil: bool) -> tuple[str, bool, int]: ...

    def download_file(self, thread_index: int, file_path: str, chunk: Chunk) -> None: ...

    def upload_file(self, thread_index: int, file_path: str, content: bytes) -> None: ...

    def move_file(self, thread_index: int, from_path: str, to_path: str) -> None: ...

    def is_cache_needed(self) -> bool: ...


@dataclass
class ChunkDownloadTask:
    """A chunk in the download list and its state."""

    chunk_index: int
    chunk_hash: bytes
    chunk_length: int = 0
    needed: bool = False
    is_downloading: bool = False
    chunk: Optional[Chunk] = None


class _Completion(NamedTuple):
    chunk_index: int
    chunk: Optional[Chunk]
    error: Optional[BaseException]


class ChunkDownloader:
    """Download chunks with a pool of worker threads.

    Chunks are first placed in a task list (add_files or add_chunk); wait_for_chunk
    returns a chunk once it is downloaded, fetching it and prefetching the next
    needed chunks as the number of threads permits.  Errors raised by a worker
    are re-raised by wait_for_chunk or stop.
    """

    def __init__(
        self,
        config: Config,
        storage: _ChunkStorage,
        snapshot_cache: Optional[_ChunkStorage] = None,
        show_statistics: bool = False,
        threads: int = 1,
    ) -> None:
        self.config = config
        self.storage = storage
        self.snapshot_cache = snapshot_cache
        self.show_statistics = show_statistics
        self.threads = max(threads, 1)

        self.task_list: list[ChunkDownloadTask] = []
        self.completed_tasks: set[int] = set()
        self.last_chunk_index = 0

        self._task_queue: queue.Queue[Optional[ChunkDownloadTask]] = queue.Queue(maxsize=self.threads)
        self._completion_queue: queue.Queue[_Completion] = queue.Queue()

        self.start_time = int(time.time())
        self.total_chunk_size = 0
        self.downloaded_chunk_size = 0
        self._size_lock = threading.Lock()
        self.number_of_downloaded_chunks = 0
        self.number_of_downloading_chunks = 0
        self.number_of_active_chunks = 0

        self._workers = [
            threading.Thread(target=self._work, args=(index,), daemon=True) for index in range(self.threads)
        ]
        for worker in self._workers:
            worker.start()

    def __enter__(self) -> ChunkDownloader:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.stop()

    def _work(self, thread_index: int) -> None:
        while True:
            task = self._task_queue.get()
            if task is None:
                return
            try:
                self.download(thread_index, task)
            except Exception as error:  # re-raised by the waiting thread
                logger.error("Failed to download chunk %d: %s", task.chunk_index, error)
                self._completion_queue.put(_Completion(task.chunk_index, None, error))

    def _dispatch(self, task: ChunkDownloadTask) -> None:
        self._task_queue.put(task)
        task.is_downloading = True
        self.number_of_downloading_chunks += 1
        self.number_of_active_chunks += 1

    def _receive(self) -> None:
        completion = self._completion_queue.get()
        self.number_of_downloading_chunks -= 1
        if completion.error is not None:
            raise completion.error
        self.completed_tasks.add(completion.chunk_index)
        self.task_list[completion.chunk_index].chunk = completion.chunk
        self.number_of_downloaded_chunks += 1

    def add_files(self, chunk_hashes: Sequence[bytes], chunk_lengths: Sequence[int], files: Sequence[Entry]) -> None:
        """Build the download list from the chunks of the files.

        The chunk indices of each file are rewritten to point into the download list.
        """
        self.task_list = []
        last_chunk_index = -1
        self.total_chunk_size = 0
        for file in files:
            if file.size == 0:
                continue
            for i in range(file.start_chunk, file.end_chunk + 1):
                if last_chunk_index != i:
                    self.task_list.append(
                        ChunkDownloadTask(
                            chunk_index=len(self.task_list),
                            chunk_hash=chunk_hashes[i],
                            chunk_length=chunk_lengths[i],
                        )
                    )
                    self.total_chunk_size += chunk_lengths[i]
                else:
                    self.task_list[-1].needed = True
                last_chunk_index = i
            span = file.end_chunk - file.start_chunk
            file.start_chunk = len(self.task_list) - span - 1
            file.end_chunk = len(self.task_list) - 1

    def add_chunk(self, chunk_hash: bytes) -> int:
        """Append one chunk to the download list and return its index."""
        task = ChunkDownloadTask(chunk_index=len(self.task_list), chunk_hash=chunk_hash, needed=True)
        self.task_list.append(task)
        if self.number_of_active_chunks < self.threads:
            self._dispatch(task)
        return task.chunk_index

    def prefetch(self, file: Entry) -> None:
        """Start downloading needed chunks of the file, as many as threads permit."""
        self.reclaim(file.start_chunk)
        for i in range(file.start_chunk, file.end_chunk + 1):
            task = self.task_list[i]
            if task.needed:
                if not task.is_downloading:
                    if self.number_of_active_chunks >= self.threads:
                        return
                    logger.debug(
                        "Prefetching %s chunk %s", file.path, self.config.get_chunk_id_from_hash(task.chunk_hash)
                    )
                    self._dispatch(task)
            else:
                logger.debug(
                    "%s chunk %s is not needed", file.path, self.config.get_chunk_id_from_hash(task.chunk_hash)
                )

    def reclaim(self, chunk_index: int) -> None:
        """Release downloaded chunks before chunk_index."""
        if self.last_chunk_index >= chunk_index:
            return

        for i in sorted(self.completed_tasks):
            if i < chunk_index and self.task_list[i].chunk is not None:
                self.task_list[i].chunk = None
                self.completed_tasks.discard(i)
                self.number_of_active_chunks -= 1

        # Chunks never started will never be downloaded, so they leave the total.
        for task in self.task_list[self.last_chunk_index : chunk_index]:
            if not task.is_downloading:
                with self._size_lock:
                    self.total_chunk_size -= task.chunk_length
        self.last_chunk_index = chunk_index

    def last_downloaded_chunk(self) -> tuple[Optional[Chunk], bytes | str]:
        """Return the chunk at the last reclaimed index and its hash, or (None, "")."""
        if self.last_chunk_index >= len(self.task_list):
            return None, ""
        task = self.task_list[self.last_chunk_index]
        return task.chunk, task.chunk_hash

    def wait_for_chunk(self, chunk_index: int) -> Chunk:
        """Return the chunk at chunk_index once downloaded, prefetching the following ones."""
        self.reclaim(chunk_index)

        task = self.task_list[chunk_index]
        if not task.is_downloading:
            logger.debug("Fetching chunk %s", self.config.get_chunk_id_from_hash(task.chunk_hash))
            self._dispatch(task)

        for following in self.task_list[chunk_index + 1 :]:
            if self.number_of_active_chunks >= self.threads or not following.needed:
                break
            if not following.is_downloading:
                logger.debug("Prefetching chunk %s", self.config.get_chunk_id_from_hash(following.chunk_hash))
                self._dispatch(following)

        while chunk_index not in self.completed_tasks:
            self._receive()

        chunk = self.task_list[chunk_index].chunk
        assert chunk is not None
        return chunk

    def stop(self) -> None:
        """Wait for pending downloads, stop the workers and raise the first error."""
        first_error: Optional[BaseException] = None
        while self.number_of_downloading_chunks > 0:
            try:
                self._receive()
            except Exception as error:
                if first_error is None:
                    first_error = error

        for i in self.completed_tasks:
            self.task_list[i].chunk = None
            self.number_of_active_chunks -= 1
        self.completed_tasks.clear()

        for _ in self._workers:
            self._task_queue.put(None)
        for worker in self._workers:
            worker.join()
        self._workers = []

        if first_error is not None:
            raise first_error

    def _load_from_cache(self, thread_index: int, chunk: Chunk, chunk_id: str) -> tuple[str, bool]:
        cache = self.snapshot_cache
        assert cache is not None
        chunk.reset(True)
        try:
            cached_path, exists, _ = cache.find_chunk(thread_index, chunk_id, False)
        except Exception as error:
            logger.warning("Failed to find the cache path for the chunk %s: %s", chunk_id, error)
            return "", False
        if not exists:
            return cached_path, False
        try:
            cache.download_file(0, cached_path, chunk)
        except Exception as error:
            logger.warning("Failed to load the chunk %s from the snapshot cache: %s", chunk_id, error)
            return cached_path, False
        actual_id = chunk.id()
        if actual_id != chunk_id:
            logger.warning("The chunk %s load from the snapshot cache has a hash id of %s", chunk_id, actual_id)
            return cached_path, False
        logger.debug("Chunk %s has been loaded from the snapshot cache", chunk_id)
        return cached_path, True

    def _fetch(self, thread_index: int, task: ChunkDownloadTask, chunk: Chunk, chunk_id: str) -> None:
        may_miss = bool(getattr(self.storage, "may_miss_existing_chunks", False))
        attempt = 0
        while True:
            chunk_path, exists, _ = self.storage.find_chunk(thread_index, chunk_id, False)
            if not exists:
                fossil_path, fossil_exists, _ = self.storage.find_chunk(thread_index, chunk_id, True)
                if not fossil_exists:
                    if may_miss and attempt < MAX_DOWNLOAD_ATTEMPTS:
                        logger.warning("Failed to find the chunk %s; retrying", chunk_id)
                        attempt += 1
                        continue
                    raise FileNotFoundError(f"Chunk {chunk_id} can't be found")
                # A fossil cannot be downloaded directly; turn it back into a chunk first.
                self.storage.move_file(thread_index, fossil_path, chunk_path)
                logger.warning("Fossil %s has been resurrected", chunk_id)
                attempt += 1
                continue

            try:
                self.storage.download_file(thread_index, chunk_path, chunk)
            except Exception as error:
                if (isinstance(error, EOFError) or may_miss) and attempt < MAX_DOWNLOAD_ATTEMPTS:
                    logger.warning("Failed to download the chunk %s: %s; retrying", chunk_id, error)
                    chunk.reset(False)
                    attempt += 1
                    continue
                raise

            try:
                chunk.decrypt(self.config.chunk_key, task.chunk_hash)
            except ChunkError as error:
                if attempt < MAX_DOWNLOAD_ATTEMPTS:
                    logger.warning("Failed to decrypt the chunk %s: %s; retrying", chunk_id, error)
                    chunk.reset(False)
                    attempt += 1
                    continue
                raise ChunkError(f"Failed to decrypt the chunk {chunk_id}: {error}") from error

            actual_id = chunk.id()
            if actual_id != chunk_id:
                if attempt < MAX_DOWNLOAD_ATTEMPTS:
                    logger.warning("The chunk %s has a hash id of %s; retrying", chunk_id, actual_id)
                    chunk.reset(False)
                    attempt += 1
                    continue
                raise ChunkError(f"The chunk {chunk_id} has a hash id of {actual_id}")
            return

    def download(self, thread_index: int, task: ChunkDownloadTask) -> bool:
        """Download one chunk and report it; return False if it came from the snapshot cache."""
        chunk = Chunk(self.config, True)
        chunk_id = self.config.get_chunk_id_from_hash(task.chunk_hash)
        cached_path = ""

        if self.snapshot_cache is not None and self.storage.is_cache_needed():
            cached_path, loaded = self._load_from_cache(thread_index, chunk, chunk_id)
            if loaded:
                self._completion_queue.put(_Completion(task.chunk_index, chunk, None))
                return False

        # The downloaded content is compressed and maybe encrypted; decrypt() sets up the hash.
        chunk.reset(False)
        self._fetch(thread_index, task, chunk, chunk_id)

        if cached_path and self.snapshot_cache is not None:
            try:
                self.snapshot_cache.upload_file(thread_index, cached_path, chunk.data())
            except Exception as error:
                logger.warning("Failed to add the chunk %s to the snapshot cache: %s", chunk_id, error)

        with self._size_lock:
            self.downloaded_chunk_size += chunk.length()
            downloaded = self.downloaded_chunk_size
            total = self.total_chunk_size

        if self.show_statistics and total > 0:
            now = max(int(time.time()), self.start_time + 1)
            speed = downloaded // (now - self.start_time)
            remaining = (total - downloaded) // speed + 1 if speed > 0 else 0
            percentage = (downloaded * 1000 // total) / 10
            logger.info(
                "Downloaded chunk %d size %d, %dB/s %ds %.1f%%",
                task.chunk_index + 1,
                chunk.length(),
                speed,
                remaining,
                percentage,
            )
        else:
            logger.debug("Chunk %s has been downloaded", chunk_id)

        self._completion_queue.put(_Completion(task.chunk_index, chunk, None))
        return True