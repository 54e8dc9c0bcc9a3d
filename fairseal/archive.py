"""
Archive sources for the comparator.

An archive source is a read-only, indexable list of ArchiveEntry objects:
path, uncompressed size, CRC-32 checksum and a payload accessor. Zip
archives are indexed from their central directory without extracting;
directory trees are walked and checksummed on the fly.
"""

from dataclasses import dataclass, field
from typing import Callable
import logging
import os
import zipfile
import zlib

from .errors import ArchiveError

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 1024 * 1024


@dataclass(frozen=True)
class ArchiveEntry:
    path: str
    size: int
    checksum: int
    is_dir: bool = False
    reader: Callable[[], bytes] = field(default=None, repr=False, compare=False)

    def read(self):
        """Return the full, uncompressed payload."""
        if self.is_dir:
            return b""
        if self.reader is None:
            raise ArchiveError(f"No payload accessor for {self.path}")
        return self.reader()

    @property
    def name(self):
        return self.path.rstrip("/").rsplit("/", 1)[-1]


class ZipArchiveSource:
    """Entries of a zip file, in central directory order."""

    def __init__(self, path):
        self.path = path
        try:
            self._zip = zipfile.ZipFile(path)
        except (OSError, zipfile.BadZipFile) as e:
            raise ArchiveError(f"Cannot open archive {path}: {e}") from e

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def close(self):
        self._zip.close()

    def read(self, path):
        try:
            return self._zip.read(path)
        except (KeyError, zipfile.BadZipFile, OSError) as e:
            raise ArchiveError(f"Cannot read {path} from {self.path}: {e}") from e

    def entries(self):
        entries = []
        for info in self._zip.infolist():
            entries.append(ArchiveEntry(
                path=info.filename,
                size=info.file_size,
                checksum=info.CRC,
                is_dir=info.is_dir(),
                reader=lambda name=info.filename: self.read(name),
            ))
        logger.debug("indexed %d entries from %s", len(entries), self.path)
        return entries


def _file_crc32(path):
    checksum = 0
    with open(path, "rb") as fh:
        for chunk in iter(lambda: fh.read(READ_CHUNK_SIZE), b""):
            checksum = zlib.crc32(chunk, checksum)
    return checksum


class DirectorySource:
    """Entries of an unpacked directory tree, sorted by path.

    Paths are relative to root, use '/' separators, and directories carry
    a trailing '/' like zip directory entries.
    """

    def __init__(self, root):
        if not os.path.isdir(root):
            raise ArchiveError(f"Not a directory: {root}")
        self.root = os.path.abspath(root)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        pass

    def close(self):
        pass

    def read(self, path):
        full_path = os.path.join(self.root, *path.split("/"))
        try:
            with open(full_path, "rb") as fh:
                return fh.read()
        except OSError as e:
            raise ArchiveError(f"Cannot read {path} from {self.root}: {e}") from e

    def entries(self):
        entries = []
        for dirpath, dirnames, filenames in os.walk(self.root):
            dirnames.sort()
            rel_dir = os.path.relpath(dirpath, self.root).replace(os.sep, "/")
            prefix = "" if rel_dir == "." else rel_dir + "/"
            if prefix:
                entries.append(ArchiveEntry(prefix, 0, 0, is_dir=True))
            for name in sorted(filenames):
                full_path = os.path.join(dirpath, name)
                rel_path = prefix + name
                entries.append(ArchiveEntry(
                    path=rel_path,
                    size=os.path.getsize(full_path),
                    checksum=_file_crc32(full_path),
                    reader=lambda rel_path=rel_path: self.read(rel_path),
                ))
        return entries


def open_source(path):
    """Open a zip file or a directory as an archive source."""
    if os.path.isdir(path):
        return DirectorySource(path)
    return ZipArchiveSource(path)
