"""File and directory entries of a snapshot: ordering, JSON form and local listing."""

from __future__ import annotations

import base64
import binascii
import json
import logging
import os
import re
import stat
import time as _time
from dataclasses import dataclass
from functools import cmp_to_key
from typing import Any, Iterable, NamedTuple, Optional

logger = logging.getLogger(__name__)

DUPLICACY_DIRECTORY = ".duplicacy"
"""Hidden directory in a repository that is never listed."""

# Mode bits as stored in snapshots.
MODE_DIR = 1 << 31
MODE_APPEND = 1 << 30
MODE_EXCLUSIVE = 1 << 29
MODE_TEMPORARY = 1 << 28
MODE_SYMLINK = 1 << 27
MODE_DEVICE = 1 << 26
MODE_NAMED_PIPE = 1 << 25
MODE_SOCKET = 1 << 24
MODE_SETUID = 1 << 23
MODE_SETGID = 1 << 22
MODE_CHAR_DEVICE = 1 << 21
MODE_STICKY = 1 << 20
MODE_IRREGULAR = 1 << 19
MODE_PERM = 0o777

MODE_TYPE = MODE_DIR | MODE_SYMLINK | MODE_NAMED_PIPE | MODE_SOCKET | MODE_DEVICE | MODE_CHAR_DEVICE | MODE_IRREGULAR
MODE_MASK = MODE_PERM | MODE_SETUID | MODE_SETGID | MODE_STICKY

_CONTENT_PATTERN = re.compile(r"^([0-9]+):([0-9]+):([0-9]+):([0-9]+)")

_SLASH = ord("/")


class EntryError(ValueError):
    """Raised when an entry description in a snapshot is invalid."""


def _path_bytes(path: str) -> bytes:
    return path.encode("utf-8", "surrogateescape")


def _path_text(raw: bytes) -> str:
    return raw.decode("utf-8", "surrogateescape")


def _clean(text: str) -> str:
    # Bytes that are not valid UTF-8 become replacement characters in JSON.
    return _path_bytes(text).decode("utf-8", "replace")


def _go_mode(st_mode: int) -> int:
    """Translate a POSIX st_mode into the mode bits stored in snapshots."""
    mode = st_mode & MODE_PERM
    if st_mode & stat.S_ISUID:
        mode |= MODE_SETUID
    if st_mode & stat.S_ISGID:
        mode |= MODE_SETGID
    if st_mode & stat.S_ISVTX:
        mode |= MODE_STICKY
    if stat.S_ISDIR(st_mode):
        mode |= MODE_DIR
    elif stat.S_ISLNK(st_mode):
        mode |= MODE_SYMLINK
    elif stat.S_ISFIFO(st_mode):
        mode |= MODE_NAMED_PIPE
    elif stat.S_ISSOCK(st_mode):
        mode |= MODE_SOCKET
    elif stat.S_ISBLK(st_mode):
        mode |= MODE_DEVICE
    elif stat.S_ISCHR(st_mode):
        mode |= MODE_DEVICE | MODE_CHAR_DEVICE
    return mode


def _posix_permissions(mode: int) -> int:
    result = mode & MODE_PERM
    if mode & MODE_SETUID:
        result |= stat.S_ISUID
    if mode & MODE_SETGID:
        result |= stat.S_ISGID
    if mode & MODE_STICKY:
        result |= stat.S_ISVTX
    return result


def _dump_json(document: dict[str, Any]) -> str:
    text = json.dumps(document, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    for char, escaped in (
        ("<", "\\u003c"),
        (">", "\\u003e"),
        ("&", "\\u0026"),
        ("\u2028", "\\u2028"),
        ("\u2029", "\\u2029"),
    ):
        text = text.replace(char, escaped)
    return text


def _join(top: str, path: str) -> str:
    return os.path.join(top, path) if path else top


@dataclass
class Entry:
    """A file, directory or symlink with its place in the chunk sequence."""

    path: str
    size: int = 0
    time: int = 0
    mode: int = 0
    link: str = ""
    hash: str = ""
    uid: int = -1
    gid: int = -1
    start_chunk: int = 0
    start_offset: int = 0
    end_chunk: int = 0
    end_offset: int = 0
    attributes: Optional[dict[str, bytes]] = None

    def __post_init__(self) -> None:
        if self.path and not self.path.endswith("/") and self.mode & MODE_DIR:
            self.path += "/"

    def to_json(self) -> str:
        """Return the compact JSON description stored in snapshots."""
        document: dict[str, Any] = {
            "name": base64.b64encode(_path_bytes(self.path)).decode("ascii"),
            "size": self.size,
            "time": self.time,
            "mode": self.mode,
            "hash": _clean(self.hash),
        }
        if self.is_link():
            document["link"] = _clean(self.link)
        if self.is_file() and self.size > 0:
            document["content"] = f"{self.start_chunk}:{self.start_offset}:{self.end_chunk}:{self.end_offset}"
        if self.uid != -1 and self.gid != -1:
            document["uid"] = self.uid
            document["gid"] = self.gid
        if self.attributes:
            document["attributes"] = {
                name: base64.b64encode(value).decode("ascii") for name, value in self.attributes.items()
            }
        return _dump_json(document)

    def is_file(self) -> bool:
        return self.mode & MODE_TYPE == 0

    def is_dir(self) -> bool:
        return self.mode & MODE_DIR != 0

    def is_link(self) -> bool:
        return self.mode & MODE_SYMLINK != 0

    def permissions(self) -> int:
        """Return the permission, setuid, setgid and sticky bits of the mode."""
        return self.mode & MODE_MASK

    def is_same_as(self, other: Entry) -> bool:
        """Same size and modification times within one second."""
        return self.size == other.size and other.time - 1 <= self.time <= other.time + 1

    def is_same_as_stat(self, stat_result: os.stat_result) -> bool:
        """Same size as the stat result and modification times within one second."""
        mtime = int(stat_result.st_mtime)
        return self.size == stat_result.st_size and mtime - 1 <= self.time <= mtime + 1

    def format(self, max_size_digits: int) -> str:
        """Return a listing line: size, local modification time, hash and path."""
        modified = _time.strftime("%Y-%m-%d %H:%M:%S", _time.localtime(self.time))
        return f"{str(self.size).rjust(max_size_digits)} {modified} {self.hash.rjust(64)} {self.path}"

    def restore_metadata(self, full_path: str, set_owner: bool) -> None:
        """Apply owner, permissions and modification time to the file at full_path.

        Permissions and time are left alone for symlinks.  OSError is raised when
        the file cannot be examined or changed.
        """
        info = os.lstat(full_path)

        # chown can clear setuid/setgid bits, so it goes before chmod.
        if set_owner and self.uid != -1 and self.gid != -1 and hasattr(os, "lchown"):
            if info.st_uid != self.uid or info.st_gid != self.gid:
                os.lchown(full_path, self.uid, self.gid)

        if not self.is_link() and _go_mode(info.st_mode) & MODE_MASK != self.permissions():
            os.chmod(full_path, _posix_permissions(self.permissions()))

        if not self.is_link() and int(info.st_mtime) != self.time:
            os.utime(full_path, (self.time, self.time))

    def compare(self, other: Entry) -> int:
        """Order entries so that files come before subdirectories of the same parent.

        Returns a negative number, zero or a positive number.
        """
        path1 = _path_bytes(self.path)
        path2 = _path_bytes(other.path)

        p = 0
        shortest = min(len(path1), len(path2))
        while p < shortest and path1[p] == path2[p]:
            p += 1

        c1 = path1[p] if p < len(path1) else 0
        c2 = path2[p] if p < len(path2) else 0

        left_is_dir = c1 == _SLASH or _SLASH in path1[p:]
        right_is_dir = c2 == _SLASH or _SLASH in path2[p:]

        if left_is_dir:
            if right_is_dir:
                if c1 == _SLASH:
                    return -1
                if c2 == _SLASH:
                    return 1
                return c1 - c2
            return 1
        if right_is_dir:
            return -1
        return c1 - c2

    def diff(
        self,
        chunk_hashes: list[str],
        chunk_lengths: list[int],
        other_hashes: list[str],
        other_lengths: list[int],
    ) -> int:
        """Return how many bytes of this file are not found at the same offset in the other chunks."""
        modified = 0
        offset1 = offset2 = 0
        i1 = self.start_chunk
        i2 = 0
        while i1 <= self.end_chunk and i2 < len(other_hashes):
            start = self.start_offset if i1 == self.start_chunk else 0
            end = self.end_offset if i1 == self.end_chunk else chunk_lengths[i1]

            if offset1 < offset2:
                modified += end - start
                offset1 += end - start
                i1 += 1
            elif offset1 > offset2:
                offset2 += other_lengths[i2]
                i2 += 1
            else:
                if not (chunk_hashes[i1] == other_hashes[i2] and end - start == other_lengths[i2]):
                    modified += chunk_lengths[i1]
                offset1 += end - start
                offset2 += other_lengths[i2]
                i1 += 1
                i2 += 1
        return modified


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _number(document: dict[str, Any], key: str, label: str, path: str) -> int:
    if key not in document:
        raise EntryError(f"{label} is not specified for file '{path}' in the snapshot")
    value = document[key]
    if not _is_number(value):
        raise EntryError(f"{label} is not a valid integer for file '{path}' in the snapshot")
    return int(value)


def _decode_base64(text: str) -> bytes:
    return base64.b64decode(text.encode("ascii"), validate=True)


def entry_from_json(description: bytes | str | dict[str, Any]) -> Entry:
    """Parse an entry from its JSON description in a snapshot."""
    if isinstance(description, dict):
        document = description
    else:
        try:
            document = json.loads(description)
        except (ValueError, UnicodeDecodeError) as error:
            raise EntryError(f"Invalid file description in the snapshot: {error}") from error
        if not isinstance(document, dict):
            raise EntryError("Invalid file description in the snapshot")

    if "name" in document:
        encoded = document["name"]
        if not isinstance(encoded, str):
            raise EntryError("Name is not a string for a file in the snapshot")
        try:
            path = _path_text(_decode_base64(encoded))
        except (binascii.Error, ValueError) as error:
            raise EntryError(f"Invalid name '{encoded}' in the snapshot") from error
    elif "path" not in document:
        raise EntryError("Path is not specified for a file in the snapshot")
    elif not isinstance(document["path"], str):
        raise EntryError("Path is not a string for a file in the snapshot")
    else:
        path = document["path"]

    size = _number(document, "size", "Size", path)
    mtime = _number(document, "time", "Time", path)
    mode = _number(document, "mode", "Mode", path) & 0xFFFFFFFF

    if "hash" not in document:
        raise EntryError(f"Hash is not specified for file '{path}' in the snapshot")
    file_hash = document["hash"]
    if not isinstance(file_hash, str):
        raise EntryError(f"Hash is not a string for file '{path}' in the snapshot")

    link = ""
    if "link" in document:
        link = document["link"]
        if not isinstance(link, str):
            raise EntryError(f"Symlink is not a valid string for file '{path}' in the snapshot")

    uid = int(document["uid"]) if _is_number(document.get("uid")) else -1
    gid = int(document["gid"]) if _is_number(document.get("gid")) else -1

    attributes: Optional[dict[str, bytes]] = None
    if "attributes" in document:
        raw = document["attributes"]
        if not isinstance(raw, dict):
            raise EntryError(f"Attributes are invalid for file '{path}' in the snapshot")
        attributes = {}
        for name, value in raw.items():
            if value is None:
                attributes[name] = b""
            elif not isinstance(value, str):
                raise EntryError(f"Attribute '{name}' is invalid for file '{path}' in the snapshot")
            else:
                try:
                    attributes[name] = _decode_base64(value)
                except (binascii.Error, ValueError) as error:
                    raise EntryError(
                        f"Failed to decode attribute '{name}' for file '{path}' in the snapshot: {error}"
                    ) from error

    entry = Entry(
        path=path,
        size=size,
        time=mtime,
        mode=mode,
        link=link,
        hash=file_hash,
        uid=uid,
        gid=gid,
        attributes=attributes,
    )

    if entry.is_file() and entry.size > 0:
        if "content" not in document:
            raise EntryError(f"Content is not specified for file '{path}' in the snapshot")
        content = document["content"]
        if not isinstance(content, str):
            raise EntryError(f"Content is invalid for file '{path}' in the snapshot")
        matched = _CONTENT_PATTERN.match(content)
        if matched is None:
            raise EntryError(f"Content is specified in a wrong format for file '{path}' in the snapshot")
        entry.start_chunk, entry.start_offset, entry.end_chunk, entry.end_offset = (
            int(group) for group in matched.groups()
        )

    return entry


def entry_from_stat(stat_result: os.stat_result, name: str, directory: str) -> Entry:
    """Create an entry named directory + name from a stat result."""
    mode = _go_mode(stat_result.st_mode)
    if mode & MODE_DIR and mode & MODE_SYMLINK:
        mode ^= MODE_DIR
    entry = Entry(
        path=directory + name,
        size=stat_result.st_size,
        time=int(stat_result.st_mtime),
        mode=mode,
    )
    entry.uid = getattr(stat_result, "st_uid", -1)
    entry.gid = getattr(stat_result, "st_gid", -1)
    return entry


def sort_by_name(entries: Iterable[Entry]) -> list[Entry]:
    """Return the entries in snapshot order (see Entry.compare)."""
    return sorted(entries, key=cmp_to_key(lambda left, right: left.compare(right)))


def sort_by_chunk(entries: Iterable[Entry]) -> list[Entry]:
    """Return the entries ordered by starting chunk, then starting offset."""
    return sorted(entries, key=lambda entry: (entry.start_chunk, entry.start_offset))


class Listing(NamedTuple):
    """What one directory holds: files, subdirectories and paths that were skipped."""

    files: list[Entry]
    directories: list[Entry]
    skipped: list[str]


def list_entries(top: str, path: str = "", nobackup_file: str = "") -> Listing:
    """List the directory 'path' under 'top', with entry paths relative to 'top'.

    Files come in snapshot order; subdirectories come in reverse order so that
    popping them off the end of a stack visits them in snapshot order.  A
    directory that holds nobackup_file is treated as empty.  OSError is raised
    if the directory cannot be read.
    """
    logger.debug("Listing %s", path)
    full_path = _join(top, path)

    names = sorted(os.listdir(full_path), key=_path_bytes)
    if nobackup_file and nobackup_file in names:
        logger.debug("%s is excluded due to nobackup file", path)
        return Listing([], [], [])

    normalized_path = path if not path or path.endswith("/") else path + "/"
    normalized_top = top if not top or top.endswith("/") else top + "/"

    infos = [(name, os.lstat(os.path.join(full_path, name))) for name in names]
    infos.sort(key=lambda item: (stat.S_ISDIR(item[1].st_mode), _path_bytes(item[0])))

    entries: list[Entry] = []
    skipped: list[str] = []

    for name, info in infos:
        if name == DUPLICACY_DIRECTORY:
            continue
        entry = entry_from_stat(info, name, normalized_path)

        if entry.is_link():
            try:
                entry.link = os.readlink(os.path.join(top, entry.path))
            except OSError as error:
                logger.warning("Failed to read the symlink %s: %s", entry.path, error)
                skipped.append(entry.path)
                continue

            link = entry.link
            if (
                path == ""
                and (os.path.isabs(link) or link.startswith("\\\\"))
                and not link.startswith(normalized_top)
            ):
                try:
                    target = os.stat(os.path.join(top, entry.path))
                except OSError as error:
                    logger.warning("Failed to read the symlink: %s", error)
                    skipped.append(entry.path)
                    continue
                followed = entry_from_stat(target, name, "")
                if os.name == "nt":
                    followed.path = os.path.join(normalized_path, name) + "/"
                entry = followed

        if stat.S_ISFIFO(info.st_mode) or stat.S_ISSOCK(info.st_mode) or stat.S_ISBLK(info.st_mode) or stat.S_ISCHR(
            info.st_mode
        ):
            logger.warning("Skipped non-regular file %s", entry.path)
            skipped.append(entry.path)
            continue

        entries.append(entry)

    # Followed symlinks at the top level may have changed the order.
    if path == "":
        entries = sort_by_name(entries)

    files = [entry for entry in entries if not entry.is_dir()]
    directories = [entry for entry in entries if entry.is_dir()]
    directories.reverse()
    return Listing(files, directories, skipped)