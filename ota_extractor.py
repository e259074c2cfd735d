#!/usr/bin/env python3

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


from typing import Dict, List, Optional, Tuple
import os
import sys
import logging
import argparse
import tempfile
import threading
from enum import Enum, auto
from errors import ExtractionError, Cancelled, StrategiesExhausted, WriteFailed, EntryNotFound, RangeNotSatisfiable
from payload import PAYLOAD_MAGIC, PartitionEntry
from progress import ProgressCallback, ProgressTracker, PhasedProgress
from range_source import RangeSource, LocalRangeSource, HttpRangeSource, open_range_source, COPY_CHUNK_SIZE
from reconstruct import PartitionReconstructor
from zip_container import ZipContainer, ZipEntryInfo, MaterializationCache, iter_entry_data


PAYLOAD_ENTRY_NAME = "payload.bin"
DEFAULT_CACHE_DIR = os.path.join(tempfile.gettempdir(), "OTA_EXTRACT_CACHE")


def main():
    parser = argparse.ArgumentParser(description='Android OTA partition extraction tool')
    parser.add_argument("source", help="Local path or http(s) URL of an OTA zip, payload.bin, zip with images or raw image")
    parser.add_argument("-p", "--partition", help="Name of the partition to extract, e.g. boot")
    parser.add_argument("-o", "--output", default=".", help="Output file, or directory for <partition>.img")
    parser.add_argument("--list", action="store_true", help="List the partitions of the payload and exit")
    parser.add_argument("--cache-dir", default=DEFAULT_CACHE_DIR, help="Directory for decompressed zip entries")
    parser.add_argument("--keep-cache", action="store_true", help="Keep decompressed zip entries for later runs")
    parser.add_argument("--verify-image", action="store_true", help="Check the SHA-256 of the finished image against the manifest")
    parser.add_argument("--no-hash-check", action="store_true", help="Skip the SHA-256 check of operation data")
    parser.add_argument("--timeout", type=float, default=30, help="HTTP timeout in seconds")
    parser.add_argument("--retries", type=int, default=3, help="HTTP retries for failed requests")
    parser.add_argument("--header", action="append", default=[], help="Extra HTTP header 'Name: Value', can be repeated")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    args = parser.parse_args()
    if not args.list and args.partition is None:
        parser.error("--partition is required unless --list is given")
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO, format='%(asctime)s %(name)-12s %(levelname)-8s:  %(message)s')
    try:
        headers = parse_headers(args.header)
    except ValueError as e:
        parser.error(str(e))
    http_options = {
        "timeout": args.timeout,
        "max_retries": args.retries,
        "headers": headers,
    }
    extractor = SmartExtractor(cache_dir=args.cache_dir, keep_cache=args.keep_cache, verify_hashes=not args.no_hash_check, verify_image=args.verify_image, progress=log_progress, http_options=http_options)
    try:
        if args.list:
            for partition in extractor.list_partitions(args.source):
                print("%-24s %14d bytes  %6d operations" % (partition.name, partition.target_size, len(partition.operations)))
        else:
            output_path = extractor.extract(args.source, args.partition, args.output)
            logging.info("Done: %s" % output_path)
    except ExtractionError as e:
        logging.error("%s: %s" % (e.kind, e))
        sys.exit(1)


def parse_headers(header_args: List[str]) -> Dict[str, str]:
    headers = {}
    for header in header_args:
        if ":" not in header:
            raise ValueError("Invalid header %r, expected 'Name: Value'" % header)
        name, value = header.split(":", 1)
        headers[name.strip()] = value.strip()
    return headers


def log_progress(percent: int, done: int, total: int):
    if percent % 10 == 0:
        logging.info("Progress: %3d%% (%d/%d bytes)" % (percent, done, total))


def image_file_name(partition_name: str) -> str:
    if partition_name.lower().endswith(".img"):
        return partition_name
    return partition_name + ".img"


def resolve_output_path(output_path: str, partition_name: str) -> str:
    """
    A directory (existing, or given with a trailing separator) gets <partition>.img appended
    """
    if os.path.isdir(output_path) or output_path.endswith("/") or output_path.endswith(os.sep):
        output_path = os.path.join(output_path, image_file_name(partition_name))
    parent = os.path.dirname(os.path.abspath(output_path))
    try:
        os.makedirs(parent, exist_ok=True)
    except OSError as e:
        raise WriteFailed("Cannot create output directory %r: %s" % (parent, e)) from e
    return output_path


class CheckSourceResult(Enum):
    PAYLOAD = auto()
    PAYLOAD_IN_ZIP = auto()
    IMAGE_IN_ZIP = auto()
    RAW_IMAGE = auto()
    HANDLER_NO_MATCH = auto()


class SourceInfo:
    """
    Lazily probed facts about a source shared by all strategies, so the central directory
    of a remote zip is fetched only once.
    """

    def __init__(self, source: RangeSource):
        self.source = source
        self._magic: Optional[bytes] = None
        self._container: Optional[ZipContainer] = None
        self._container_probed = False

    @property
    def magic(self) -> bytes:
        if self._magic is None:
            try:
                self._magic = self.source.read_at(0, min(4, self.source.size()))
            except RangeNotSatisfiable as e:
                logging.debug("Cannot read the magic of %r, treating the type as unknown: %s" % (self.source.ref, e))
                self._magic = b''
        return self._magic

    @property
    def is_zip(self) -> bool:
        return self.magic in (b'PK\x03\x04', b'PK\x05\x06')

    @property
    def is_payload(self) -> bool:
        return self.magic == PAYLOAD_MAGIC.to_bytes(4, "big")

    @property
    def container(self) -> Optional[ZipContainer]:
        if not self._container_probed:
            self._container_probed = True
            if self.is_zip:
                self._container = ZipContainer(self.source)
        return self._container


class ExtractionStrategy:
    name: str

    def __init__(self, extractor: "SmartExtractor", info: SourceInfo, partition_name: str):
        self.extractor = extractor
        self.info = info
        self.source = info.source
        self.partition_name = partition_name

    def check(self) -> CheckSourceResult:
        raise NotImplementedError("check() must be implemented in subclass (%s)" % self.__class__.__name__)

    def extract(self, output_path: str) -> str:
        raise NotImplementedError("extract() must be implemented in subclass (%s)" % self.__class__.__name__)

    def copy_stream(self, chunks, output_path: str, total: int) -> str:
        """
        Writes chunks to output_path, removes the file on any failure
        """
        tracker = ProgressTracker(self.extractor.progress, total)
        try:
            try:
                with open(output_path, 'wb') as f:
                    for chunk in chunks:
                        f.write(chunk)
                        tracker.advance(len(chunk))
            except OSError as e:
                raise WriteFailed("Writing %r failed: %s" % (output_path, e)) from e
        except BaseException:
            if os.path.exists(output_path):
                logging.info("Removing incomplete output %r" % output_path)
                os.unlink(output_path)
            raise
        finally:
            chunks.close()
        tracker.finish()
        return output_path


class PayloadStrategy(ExtractionStrategy):
    """
    Bare payload.bin, or an OTA zip containing payload.bin
    """
    name = "ota-payload"

    def check(self) -> CheckSourceResult:
        if self.info.is_payload:
            return CheckSourceResult.PAYLOAD
        if self.info.container is not None and self.info.container.find(PAYLOAD_ENTRY_NAME) is not None:
            return CheckSourceResult.PAYLOAD_IN_ZIP
        return CheckSourceResult.HANDLER_NO_MATCH

    def open_payload(self, reconstruct_weight: int = 1) -> Tuple[RangeSource, int, Optional[ProgressCallback]]:
        """
        Returns the source holding the payload, the offset of its header and the progress
        callback for reconstruction. A stored payload.bin is read in place, a deflated one
        is materialized into the cache first, sharing the progress range with reconstruction
        by weight 1 : reconstruct_weight.
        """
        if self.info.is_payload:
            return self.source, 0, self.extractor.progress
        location = self.info.container.locate(PAYLOAD_ENTRY_NAME)
        if not location.requires_materialization:
            logging.info("%s is stored at offset %d of %r" % (location.entry_name, location.start_byte, self.source.ref))
            return self.source, location.start_byte, self.extractor.progress
        phases = PhasedProgress(self.extractor.progress, [1, reconstruct_weight])
        path = self.extractor.cache.get(self.source, location, cancel_event=self.extractor.cancel_event, progress=phases.phase(0))
        return LocalRangeSource(path), 0, phases.phase(1)

    def reconstructor(self, payload_source: RangeSource, base_offset: int, progress: ProgressCallback = None) -> PartitionReconstructor:
        return PartitionReconstructor(payload_source, base_offset, progress=progress, cancel_event=self.extractor.cancel_event, verify_hashes=self.extractor.verify_hashes, verify_image=self.extractor.verify_image)

    def list_partitions(self) -> List[PartitionEntry]:
        payload_source, base_offset, _ = self.open_payload(reconstruct_weight=0)
        try:
            return self.reconstructor(payload_source, base_offset).read_manifest().partitions
        finally:
            if payload_source is not self.source:
                payload_source.close()

    def extract(self, output_path: str) -> str:
        payload_source, base_offset, progress = self.open_payload()
        try:
            return self.reconstructor(payload_source, base_offset, progress).run(self.partition_name, output_path)
        finally:
            if payload_source is not self.source:
                payload_source.close()


class ZipImageStrategy(ExtractionStrategy):
    """
    Zip archive containing <partition>.img, e.g. a fastboot factory image
    """
    name = "zip-image"

    def find_entry(self) -> Optional[ZipEntryInfo]:
        container = self.info.container
        if container is None:
            return None
        wanted = image_file_name(self.partition_name)
        return container.find(wanted)

    def check(self) -> CheckSourceResult:
        if self.find_entry() is None:
            return CheckSourceResult.HANDLER_NO_MATCH
        return CheckSourceResult.IMAGE_IN_ZIP

    def extract(self, output_path: str) -> str:
        entry = self.find_entry()
        if entry is None:
            raise EntryNotFound(image_file_name(self.partition_name), available=self.info.container.names())
        location = self.info.container.location(entry)
        logging.info("Extracting %r (%s, %d bytes) from %r" % (entry.name, location.compression_method.name, location.uncompressed_size, self.source.ref))
        chunks = iter_entry_data(self.source, location, cancel_event=self.extractor.cancel_event)
        return self.copy_stream(chunks, output_path, location.uncompressed_size)


class DirectImageStrategy(ExtractionStrategy):
    """
    The source itself is the image: copy (local) or download (remote) it
    """
    name = "direct-image"

    def check(self) -> CheckSourceResult:
        if self.info.is_zip or self.info.is_payload:
            return CheckSourceResult.HANDLER_NO_MATCH
        file_name = self.source.name.lower()
        wanted = image_file_name(self.partition_name).lower()
        if wanted[:-len(".img")] in file_name or file_name.endswith(".img"):
            return CheckSourceResult.RAW_IMAGE
        return CheckSourceResult.HANDLER_NO_MATCH

    def extract(self, output_path: str) -> str:
        if isinstance(self.source, HttpRangeSource):
            # Plain GET, the server may not support ranges
            total = self.source.size() if self.source.size_known else 0
            logging.info("Downloading %r (%d bytes) to %r" % (self.source.ref, total, output_path))
            chunks = self.source.iter_download(COPY_CHUNK_SIZE, self.extractor.cancel_event)
            return self.copy_stream(chunks, output_path, total)
        size = self.source.size()
        logging.info("Copying %r (%d bytes) to %r" % (self.source.ref, size, output_path))
        chunks = self.source.iter_range(0, size, COPY_CHUNK_SIZE, self.extractor.cancel_event)
        return self.copy_stream(chunks, output_path, size)


class SmartExtractor:
    """
    Tries the extraction strategies in order (OTA payload, image inside a zip, the source
    itself as image) and returns on the first one that succeeds. A failing strategy is
    logged and the next one is tried; only when all fail StrategiesExhausted is raised,
    with the error of the last strategy as primary error.
    """
    strategies = [PayloadStrategy, ZipImageStrategy, DirectImageStrategy]

    def __init__(self, cache_dir: str = None, keep_cache: bool = False, verify_hashes: bool = True, verify_image: bool = False, progress: ProgressCallback = None, cancel_event: threading.Event = None, http_options: Dict = None):
        self.cache = MaterializationCache(cache_dir or DEFAULT_CACHE_DIR, keep=keep_cache)
        self.verify_hashes = verify_hashes
        self.verify_image = verify_image
        self.progress = progress
        self.cancel_event = cancel_event
        self.http_options = dict(http_options or {})

    def open_source(self, source_ref: str) -> RangeSource:
        return open_range_source(source_ref, **self.http_options)

    def extract(self, source_ref: str, partition_name: str, output_path: str = ".") -> str:
        output_path = resolve_output_path(output_path, partition_name)
        attempts: List[Tuple[str, ExtractionError]] = []
        with self.open_source(source_ref) as source:
            info = SourceInfo(source)
            try:
                for strategy_cls in self.strategies:
                    strategy = strategy_cls(self, info, partition_name)
                    try:
                        check_result = strategy.check()
                        if check_result == CheckSourceResult.HANDLER_NO_MATCH:
                            logging.debug("Strategy %s does not apply to %r" % (strategy.name, source_ref))
                            continue
                        logging.info("Trying strategy %s (%s) for partition %r" % (strategy.name, check_result.name, partition_name))
                        return strategy.extract(output_path)
                    except Cancelled as e:
                        raise e.add_context(strategy=strategy.name, partition=partition_name, source=source_ref)
                    except ExtractionError as e:
                        e.add_context(strategy=strategy.name, partition=partition_name, source=source_ref)
                        logging.warning("Strategy %s failed: %s: %s" % (strategy.name, e.kind, e))
                        attempts.append((strategy.name, e))
            finally:
                self.cache.cleanup()
        error = StrategiesExhausted(attempts, partition=partition_name, source=source_ref)
        if len(attempts) > 0:
            raise error from attempts[-1][1]
        raise error

    def list_partitions(self, source_ref: str) -> List[PartitionEntry]:
        with self.open_source(source_ref) as source:
            strategy = PayloadStrategy(self, SourceInfo(source), "")
            try:
                if strategy.check() == CheckSourceResult.HANDLER_NO_MATCH:
                    raise EntryNotFound(PAYLOAD_ENTRY_NAME, source=source_ref)
                return strategy.list_partitions()
            finally:
                self.cache.cleanup()


if __name__ == "__main__":
    main()
