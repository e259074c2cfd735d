# This file is part of Extractor.

# Copyright (C) 2021 Security Research Labs GmbH
# SPDX-License-Identifier: Apache-2.0

# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
# 	http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.


from typing import Dict, List, NamedTuple, Optional
import os
import re
import zlib
import queue
import hashlib
import logging
import threading
from enum import Enum
from construct import Struct, Int16ul, Int32ul, Int64ul  # type: ignore
from construct_typing import TypedContainer
from errors import InvalidContainer, UnsupportedCompression, EntryNotFound, RequiresMaterialization, WriteFailed, Cancelled
from progress import ProgressCallback, ProgressTracker
from range_source import RangeSource, COPY_CHUNK_SIZE


EOCD_MAGIC = 0x06054b50
ZIP64_LOCATOR_MAGIC = 0x07064b50
ZIP64_EOCD_MAGIC = 0x06064b50
CENTRAL_DIRECTORY_MAGIC = 0x02014b50
LOCAL_HEADER_MAGIC = 0x04034b50
ZIP64_EXTRA_ID = 0x0001
# EOCD record plus the largest possible archive comment
EOCD_SEARCH_SIZE = 22 + 0xffff
FLAG_ENCRYPTED = 0x0001
FLAG_UTF8 = 0x0800
# Bounded number of compressed chunks buffered between reader thread and writer
MATERIALIZE_QUEUE_DEPTH = 4


class CompressionMethod(Enum):
    STORED = 0
    DEFLATE = 8


class EndOfCentralDirectory(TypedContainer):
    magic: int
    disk_number: int
    cd_disk_number: int
    disk_entries: int
    total_entries: int
    cd_size: int
    cd_offset: int
    comment_length: int
    # noinspection PyUnresolvedReferences
    construct_struct = Struct(
        "magic" / Int32ul,
        "disk_number" / Int16ul,
        "cd_disk_number" / Int16ul,
        "disk_entries" / Int16ul,
        "total_entries" / Int16ul,
        "cd_size" / Int32ul,
        "cd_offset" / Int32ul,
        "comment_length" / Int16ul,
    )

    def needs_zip64(self) -> bool:
        return self.total_entries == 0xffff or self.cd_size == 0xffffffff or self.cd_offset == 0xffffffff


assert EndOfCentralDirectory.sizeof() == 22


class Zip64Locator(TypedContainer):
    magic: int
    cd_disk_number: int
    eocd64_offset: int
    total_disks: int
    # noinspection PyUnresolvedReferences
    construct_struct = Struct(
        "magic" / Int32ul,
        "cd_disk_number" / Int32ul,
        "eocd64_offset" / Int64ul,
        "total_disks" / Int32ul,
    )


assert Zip64Locator.sizeof() == 20


class Zip64EndOfCentralDirectory(TypedContainer):
    magic: int
    record_size: int
    version_made_by: int
    version_needed: int
    disk_number: int
    cd_disk_number: int
    disk_entries: int
    total_entries: int
    cd_size: int
    cd_offset: int
    # noinspection PyUnresolvedReferences
    construct_struct = Struct(
        "magic" / Int32ul,
        "record_size" / Int64ul,
        "version_made_by" / Int16ul,
        "version_needed" / Int16ul,
        "disk_number" / Int32ul,
        "cd_disk_number" / Int32ul,
        "disk_entries" / Int64ul,
        "total_entries" / Int64ul,
        "cd_size" / Int64ul,
        "cd_offset" / Int64ul,
    )

    def validate(self):
        if self.magic != ZIP64_EOCD_MAGIC:
            raise InvalidContainer("Bad ZIP64 end of central directory magic 0x%08x" % self.magic)


assert Zip64EndOfCentralDirectory.sizeof() == 56


class CentralDirectoryHeader(TypedContainer):
    magic: int
    version_made_by: int
    version_needed: int
    flags: int
    compression_method: int
    mod_time: int
    mod_date: int
    crc32: int
    compressed_size: int
    uncompressed_size: int
    name_length: int
    extra_length: int
    comment_length: int
    disk_start: int
    internal_attr: int
    external_attr: int
    local_header_offset: int
    # noinspection PyUnresolvedReferences
    construct_struct = Struct(
        "magic" / Int32ul,
        "version_made_by" / Int16ul,
        "version_needed" / Int16ul,
        "flags" / Int16ul,
        "compression_method" / Int16ul,
        "mod_time" / Int16ul,
        "mod_date" / Int16ul,
        "crc32" / Int32ul,
        "compressed_size" / Int32ul,
        "uncompressed_size" / Int32ul,
        "name_length" / Int16ul,
        "extra_length" / Int16ul,
        "comment_length" / Int16ul,
        "disk_start" / Int16ul,
        "internal_attr" / Int16ul,
        "external_attr" / Int32ul,
        "local_header_offset" / Int32ul,
    )


assert CentralDirectoryHeader.sizeof() == 46


class LocalFileHeader(TypedContainer):
    magic: int
    version_needed: int
    flags: int
    compression_method: int
    mod_time: int
    mod_date: int
    crc32: int
    compressed_size: int
    uncompressed_size: int
    name_length: int
    extra_length: int
    # noinspection PyUnresolvedReferences
    construct_struct = Struct(
        "magic" / Int32ul,
        "version_needed" / Int16ul,
        "flags" / Int16ul,
        "compression_method" / Int16ul,
        "mod_time" / Int16ul,
        "mod_date" / Int16ul,
        "crc32" / Int32ul,
        "compressed_size" / Int32ul,
        "uncompressed_size" / Int32ul,
        "name_length" / Int16ul,
        "extra_length" / Int16ul,
    )


assert LocalFileHeader.sizeof() == 30


class ZipEntryInfo:
    def __init__(self, name: str, flags: int, compression_method: int, crc32: int, compressed_size: int, uncompressed_size: int, local_header_offset: int):
        self.name = name
        self.flags = flags
        self.compression_method = compression_method
        self.crc32 = crc32
        self.compressed_size = compressed_size
        self.uncompressed_size = uncompressed_size
        self.local_header_offset = local_header_offset

    def __repr__(self):
        return "ZipEntryInfo(name=%r, method=%d, compressed_size=%d, uncompressed_size=%d, local_header_offset=%d)" % (self.name, self.compression_method, self.compressed_size, self.uncompressed_size, self.local_header_offset)


class ContainerEntryLocation(NamedTuple):
    entry_name: str
    start_byte: int
    length: int
    compression_method: CompressionMethod
    uncompressed_size: int
    crc32: int

    @property
    def requires_materialization(self) -> bool:
        return self.compression_method != CompressionMethod.STORED


def parse_zip64_extra(extra: bytes, header: CentralDirectoryHeader) -> Dict[str, int]:
    """
    Returns the 64 bit values from a ZIP64 extended information extra field. Only the
    fields whose 32 bit counterpart is saturated are present, in this order.
    """
    values = {
        "uncompressed_size": header.uncompressed_size,
        "compressed_size": header.compressed_size,
        "local_header_offset": header.local_header_offset,
    }
    pos = 0
    while pos + 4 <= len(extra):
        header_id = int.from_bytes(extra[pos:pos + 2], "little")
        size = int.from_bytes(extra[pos + 2:pos + 4], "little")
        if header_id == ZIP64_EXTRA_ID:
            data = extra[pos + 4:pos + 4 + size]
            ptr = 0
            for field in ("uncompressed_size", "compressed_size", "local_header_offset"):
                if values[field] != 0xffffffff:
                    continue
                if ptr + 8 > len(data):
                    raise InvalidContainer("Truncated ZIP64 extra field")
                values[field] = int.from_bytes(data[ptr:ptr + 8], "little")
                ptr += 8
            break
        pos += 4 + size
    return values


class ZipContainer:
    """
    Reads the central directory of a ZIP archive through a RangeSource, without reading entry bodies.
    """
    source: RangeSource
    entries: Dict[str, ZipEntryInfo]

    def __init__(self, source: RangeSource):
        self.source = source
        self.entries = {}
        for entry in self._read_central_directory():
            self.entries[entry.name] = entry
        logging.debug("ZipContainer(%r): %d entries" % (source.ref, len(self.entries)))

    @staticmethod
    def looks_like_zip(source: RangeSource) -> bool:
        if source.size() < 4:
            return False
        return source.read_at(0, 4) in (b'PK\x03\x04', b'PK\x05\x06')

    def _find_eocd(self):
        size = self.source.size()
        if size < EndOfCentralDirectory.sizeof():
            raise InvalidContainer("File too small to be a ZIP archive", source=self.source.ref)
        search_start = max(0, size - EOCD_SEARCH_SIZE)
        buf = self.source.read(search_start, size - 1)
        pos = buf.rfind(EOCD_MAGIC.to_bytes(4, "little"))
        while pos >= 0:
            if pos + EndOfCentralDirectory.sizeof() <= len(buf):
                eocd = EndOfCentralDirectory.parse(buf[pos:pos + EndOfCentralDirectory.sizeof()])
                # The comment has to end exactly at the end of the file
                if pos + EndOfCentralDirectory.sizeof() + eocd.comment_length == len(buf):
                    return search_start + pos, eocd
            pos = buf.rfind(EOCD_MAGIC.to_bytes(4, "little"), 0, pos)
        raise InvalidContainer("End of central directory record not found", source=self.source.ref)

    def _read_central_directory(self) -> List[ZipEntryInfo]:
        eocd_offset, eocd = self._find_eocd()
        total_entries = eocd.total_entries
        cd_size = eocd.cd_size
        cd_offset = eocd.cd_offset
        if eocd.needs_zip64() and eocd_offset >= Zip64Locator.sizeof():
            locator = Zip64Locator.read_from(self.source, eocd_offset - Zip64Locator.sizeof())
            if locator.magic == ZIP64_LOCATOR_MAGIC:
                eocd64 = Zip64EndOfCentralDirectory.read_from(self.source, locator.eocd64_offset)
                eocd64.validate()
                total_entries = eocd64.total_entries
                cd_size = eocd64.cd_size
                cd_offset = eocd64.cd_offset
        if cd_offset + cd_size > self.source.size():
            raise InvalidContainer("Central directory (offset=%d size=%d) exceeds archive size %d" % (cd_offset, cd_size, self.source.size()), source=self.source.ref)
        cd_buf = self.source.read_at(cd_offset, cd_size)
        result = []
        pos = 0
        for entry_nr in range(total_entries):
            header = CentralDirectoryHeader.parse(cd_buf[pos:pos + CentralDirectoryHeader.sizeof()])
            if header.magic != CENTRAL_DIRECTORY_MAGIC:
                raise InvalidContainer("Bad central directory entry %d magic 0x%08x" % (entry_nr, header.magic), source=self.source.ref)
            pos += CentralDirectoryHeader.sizeof()
            raw_name = cd_buf[pos:pos + header.name_length]
            pos += header.name_length
            extra = cd_buf[pos:pos + header.extra_length]
            pos += header.extra_length + header.comment_length
            if header.flags & FLAG_UTF8:
                name = raw_name.decode("utf-8", errors="replace")
            else:
                name = raw_name.decode("cp437")
            values = parse_zip64_extra(extra, header)
            result.append(ZipEntryInfo(name=name, flags=header.flags, compression_method=header.compression_method, crc32=header.crc32, compressed_size=values["compressed_size"], uncompressed_size=values["uncompressed_size"], local_header_offset=values["local_header_offset"]))
        return result

    def names(self) -> List[str]:
        return list(self.entries.keys())

    def find(self, entry_name: str) -> Optional[ZipEntryInfo]:
        """
        Exact match first, then a case-insensitive match on the base name of the entry
        """
        if entry_name in self.entries:
            return self.entries[entry_name]
        wanted = entry_name.lower()
        for name, entry in self.entries.items():
            if name.rsplit("/", 1)[-1].lower() == wanted:
                return entry
        return None

    def location(self, entry: ZipEntryInfo) -> ContainerEntryLocation:
        if entry.flags & FLAG_ENCRYPTED:
            raise UnsupportedCompression("Entry %r is encrypted" % entry.name, source=self.source.ref)
        try:
            method = CompressionMethod(entry.compression_method)
        except ValueError:
            raise UnsupportedCompression("Entry %r uses unsupported compression method %d" % (entry.name, entry.compression_method), source=self.source.ref)
        local_header = LocalFileHeader.read_from(self.source, entry.local_header_offset)
        if local_header.magic != LOCAL_HEADER_MAGIC:
            raise InvalidContainer("Bad local header magic 0x%08x for entry %r" % (local_header.magic, entry.name), source=self.source.ref)
        # Name and extra length of the local header can differ from the central directory
        start = entry.local_header_offset + LocalFileHeader.sizeof() + local_header.name_length + local_header.extra_length
        if start + entry.compressed_size > self.source.size():
            raise InvalidContainer("Entry %r data exceeds archive size" % entry.name, source=self.source.ref)
        return ContainerEntryLocation(entry_name=entry.name, start_byte=start, length=entry.compressed_size, compression_method=method, uncompressed_size=entry.uncompressed_size, crc32=entry.crc32)

    def locate(self, entry_name: str) -> ContainerEntryLocation:
        entry = self.find(entry_name)
        if entry is None:
            raise EntryNotFound(entry_name, available=self.names(), source=self.source.ref)
        return self.location(entry)

    def direct_range(self, entry_name: str) -> ContainerEntryLocation:
        """
        Location of an entry whose bytes are directly addressable on the outer source.
        Raises RequiresMaterialization for compressed entries.
        """
        location = self.locate(entry_name)
        if location.requires_materialization:
            raise RequiresMaterialization(location, source=self.source.ref)
        return location


_EOF = object()


def iter_entry_data(source: RangeSource, location: ContainerEntryLocation, cancel_event: threading.Event = None, chunk_size: int = COPY_CHUNK_SIZE, queue_depth: int = MATERIALIZE_QUEUE_DEPTH, progress: ProgressTracker = None):
    """
    Yields the uncompressed contents of an entry in chunks of at most chunk_size bytes.
    A reader thread fetches compressed chunks into a bounded queue and blocks when the
    queue is full, so reading never gets more than queue_depth chunks ahead of the consumer.
    Size and CRC-32 are checked once the whole entry was produced.
    """
    chunk_queue = queue.Queue(maxsize=queue_depth)
    stop_event = threading.Event()

    def put(item) -> bool:
        while not stop_event.is_set():
            try:
                chunk_queue.put(item, timeout=0.1)
                return True
            except queue.Full:
                continue
        return False

    def producer():
        try:
            for chunk in source.iter_range(location.start_byte, location.length, chunk_size, cancel_event):
                if not put(chunk):
                    return
            put(_EOF)
        except Exception as e:  # Re-raised by the consumer
            put(e)

    thread = threading.Thread(target=producer, name="zip-reader-%s" % location.entry_name, daemon=True)
    thread.start()
    if location.compression_method == CompressionMethod.DEFLATE:
        decompressor = zlib.decompressobj(-zlib.MAX_WBITS)
    else:
        decompressor = None
    crc = 0
    produced = 0
    try:
        while True:
            item = chunk_queue.get()
            if item is _EOF:
                break
            if isinstance(item, Exception):
                raise item
            if cancel_event is not None and cancel_event.is_set():
                raise Cancelled(source=source.ref)
            if progress is not None:
                progress.advance(len(item))
            if decompressor is None:
                crc = zlib.crc32(item, crc)
                produced += len(item)
                yield item
                continue
            buf = item
            while len(buf) > 0 and not decompressor.eof:
                try:
                    out = decompressor.decompress(buf, chunk_size)
                except zlib.error as e:
                    raise InvalidContainer("Corrupt deflate data in entry %r: %s" % (location.entry_name, e), source=source.ref) from e
                buf = decompressor.unconsumed_tail
                if len(out) > 0:
                    crc = zlib.crc32(out, crc)
                    produced += len(out)
                    yield out
        if decompressor is not None:
            out = decompressor.flush()
            if len(out) > 0:
                crc = zlib.crc32(out, crc)
                produced += len(out)
                yield out
            if not decompressor.eof:
                raise InvalidContainer("Truncated deflate stream in entry %r" % location.entry_name, source=source.ref)
        if produced != location.uncompressed_size:
            raise InvalidContainer("Entry %r: got %d bytes, expected %d" % (location.entry_name, produced, location.uncompressed_size), source=source.ref)
        if crc != location.crc32:
            raise InvalidContainer("Entry %r: CRC-32 mismatch (0x%08x != 0x%08x)" % (location.entry_name, crc, location.crc32), source=source.ref)
    finally:
        stop_event.set()
        thread.join()


def materialize_entry(source: RangeSource, location: ContainerEntryLocation, dest_path: str, cancel_event: threading.Event = None, progress: ProgressCallback = None):
    """
    Streams an entry into dest_path. The data is written to a temporary file which is
    renamed into place only after size and CRC-32 were verified.
    """
    tmp_path = dest_path + ".part"
    tracker = ProgressTracker(progress, location.length)
    logging.info("Materializing %r (%d bytes compressed, %d bytes uncompressed) to %r" % (location.entry_name, location.length, location.uncompressed_size, dest_path))
    try:
        chunks = iter_entry_data(source, location, cancel_event=cancel_event, progress=tracker)
        try:
            with open(tmp_path, 'wb') as f:
                for chunk in chunks:
                    f.write(chunk)
        finally:
            chunks.close()
        os.replace(tmp_path, dest_path)
    except OSError as e:
        raise WriteFailed("Materializing %r to %r failed: %s" % (location.entry_name, dest_path, e), source=source.ref) from e
    finally:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
    tracker.finish()


def sanitize_file_name(name: str) -> str:
    return re.sub(r'[^A-Za-z0-9._-]', '_', name)


class MaterializationCache:
    """
    Cache directory for materialized ZIP entries, keyed by a hash of the container
    reference and the entry. Concurrent requests for the same key are serialized,
    the first caller materializes and the others reuse its file.
    """
    _key_locks: Dict[str, threading.Lock] = {}
    _key_locks_lock = threading.Lock()

    def __init__(self, cache_dir: str, keep: bool = False):
        self.cache_dir = cache_dir
        self.keep = keep
        self.used_paths: List[str] = []

    @classmethod
    def _lock_for(cls, path: str) -> threading.Lock:
        with cls._key_locks_lock:
            if path not in cls._key_locks:
                cls._key_locks[path] = threading.Lock()
            return cls._key_locks[path]

    @classmethod
    def _release_lock_for(cls, path: str):
        """
        Forgets the lock of a path once no caller holds it
        """
        with cls._key_locks_lock:
            lock = cls._key_locks.get(path)
            if lock is not None and lock.acquire(blocking=False):
                try:
                    del cls._key_locks[path]
                finally:
                    lock.release()

    def cache_path(self, source: RangeSource, location: ContainerEntryLocation) -> str:
        key = hashlib.sha256(("%s\0%s\0%d\0%08x" % (source.ref, location.entry_name, location.uncompressed_size, location.crc32)).encode()).hexdigest()[:16]
        return os.path.join(self.cache_dir, "%s_%s" % (key, sanitize_file_name(location.entry_name)))

    def get(self, source: RangeSource, location: ContainerEntryLocation, cancel_event: threading.Event = None, progress: ProgressCallback = None) -> str:
        path = self.cache_path(source, location)
        with self._lock_for(path):
            if os.path.isfile(path) and os.path.getsize(path) == location.uncompressed_size:
                logging.info("Reusing cached %r for entry %r" % (path, location.entry_name))
            else:
                try:
                    os.makedirs(self.cache_dir, exist_ok=True)
                except OSError as e:
                    raise WriteFailed("Cannot create cache directory %r: %s" % (self.cache_dir, e)) from e
                materialize_entry(source, location, path, cancel_event=cancel_event, progress=progress)
            if path not in self.used_paths:
                self.used_paths.append(path)
        return path

    def cleanup(self):
        if self.keep:
            logging.info("Keeping cache files: %r" % self.used_paths)
            for path in self.used_paths:
                self._release_lock_for(path)
            self.used_paths = []
            return
        for path in self.used_paths:
            with self._lock_for(path):
                if os.path.exists(path):
                    logging.info("Removing cache file %r" % path)
                    os.unlink(path)
            self._release_lock_for(path)
        self.used_paths = []
        if os.path.isdir(self.cache_dir) and len(os.listdir(self.cache_dir)) == 0:
            os.rmdir(self.cache_dir)
