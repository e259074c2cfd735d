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


from typing import BinaryIO, Dict, Optional
import os
import hashlib
import logging
import threading
from enum import Enum, auto
import decompressors
from decompressors import DecompressorChain
from errors import ExtractionError, PartitionNotFound, EmptyPartition, SizeMismatch, UnsupportedOperation, WriteFailed, HashMismatch, Cancelled, CodecUnavailable
from payload import PayloadHeader, Manifest, PartitionEntry, Operation, OperationType, read_header, decode_manifest
from progress import ProgressCallback, ProgressTracker
from range_source import RangeSource, COPY_CHUNK_SIZE


ZERO_CHUNK_SIZE = 4 * 1024 * 1024


class ReconstructionState(Enum):
    LOCATING = auto()
    HEADER_PARSED = auto()
    MANIFEST_PARSED = auto()
    PARTITION_FOUND = auto()
    RECONSTRUCTING = auto()
    DONE = auto()
    FAILED = auto()


class ExtentWriter:
    """
    Writes a byte stream sequentially across the destination extents of one operation,
    in extent array order.
    """

    def __init__(self, f: BinaryIO, op: Operation, block_size: int):
        self.f = f
        self.op = op
        self.block_size = block_size
        self.extent_nr = 0
        self.extent_pos = 0
        self.written = 0

    def remaining_in_extent(self) -> int:
        return self.op.dst_extents[self.extent_nr].byte_length(self.block_size) - self.extent_pos

    def skip_full_extents(self):
        while self.extent_nr < len(self.op.dst_extents) and self.remaining_in_extent() == 0:
            self.extent_nr += 1
            self.extent_pos = 0

    def write(self, buf: bytes):
        view = memoryview(buf)
        while len(view) > 0:
            self.skip_full_extents()
            if self.extent_nr >= len(self.op.dst_extents):
                raise SizeMismatch("Operation %d (%s): %d bytes of data left over after the last extent" % (self.op.index, self.op.type_name, len(view)), operation_index=self.op.index)
            extent = self.op.dst_extents[self.extent_nr]
            n = min(len(view), self.remaining_in_extent())
            write_at(self.f, extent.byte_offset(self.block_size) + self.extent_pos, view[:n])
            self.extent_pos += n
            self.written += n
            view = view[n:]

    def finish(self):
        """
        Fails if any extent did not receive its full length
        """
        total = self.op.dst_length(self.block_size)
        if self.written < total:
            self.skip_full_extents()
            extent = self.op.dst_extents[self.extent_nr]
            raise SizeMismatch("Operation %d (%s): data too short for extent %d (%r): need %d bytes, have %d" % (self.op.index, self.op.type_name, self.extent_nr, extent, extent.byte_length(self.block_size), self.extent_pos), operation_index=self.op.index)


def write_at(f: BinaryIO, offset: int, buf):
    try:
        f.seek(offset)
        f.write(buf)
    except OSError as e:
        raise WriteFailed("Write of %d bytes at offset %d failed: %s" % (len(buf), offset, e)) from e


class PartitionReconstructor:
    """
    Rebuilds one partition image from a full OTA payload located at base_offset of a
    RangeSource. The steps run as a state machine:
    LOCATING -> HEADER_PARSED -> MANIFEST_PARSED -> PARTITION_FOUND -> RECONSTRUCTING -> DONE,
    any error moves to FAILED. The output file is removed on every failure, including
    cancellation, so a partial image is never left behind.
    """
    source: RangeSource
    header: Optional[PayloadHeader]
    manifest: Optional[Manifest]
    partition: Optional[PartitionEntry]

    def __init__(self, source: RangeSource, base_offset: int = 0, progress: ProgressCallback = None, cancel_event: threading.Event = None, verify_hashes: bool = True, verify_image: bool = False, codecs: Dict[int, DecompressorChain] = None):
        self.source = source
        self.base_offset = base_offset
        self.progress = progress
        self.cancel_event = cancel_event
        self.verify_hashes = verify_hashes
        self.verify_image = verify_image
        self.codecs = {
            OperationType.REPLACE_BZ: decompressors.BZIP2,
            OperationType.REPLACE_XZ: decompressors.XZ,
        }
        if codecs is not None:
            self.codecs.update(codecs)
        self.state = ReconstructionState.LOCATING
        self.header = None
        self.manifest = None
        self.partition = None

    def _transition(self, new_state: ReconstructionState):
        logging.debug("PartitionReconstructor(%r): %s -> %s" % (self.source.ref, self.state.name, new_state.name))
        self.state = new_state

    def _fail(self, e: ExtractionError):
        self._transition(ReconstructionState.FAILED)
        if self.partition is not None:
            e.add_context(partition=self.partition.name)
        e.add_context(source=self.source.ref)

    def _check_cancelled(self):
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise Cancelled()

    @property
    def data_start(self) -> int:
        return self.base_offset + self.header.header_total_size

    def read_header(self) -> PayloadHeader:
        assert self.state == ReconstructionState.LOCATING, "read_header() in state %s" % self.state.name
        try:
            self.header = read_header(self.source, self.base_offset)
        except ExtractionError as e:
            self._fail(e)
            raise
        self._transition(ReconstructionState.HEADER_PARSED)
        return self.header

    def read_manifest(self) -> Manifest:
        if self.header is None:
            self.read_header()
        assert self.state == ReconstructionState.HEADER_PARSED, "read_manifest() in state %s" % self.state.name
        try:
            self.manifest = decode_manifest(self.source, self.base_offset, self.header)
        except ExtractionError as e:
            self._fail(e)
            raise
        self._transition(ReconstructionState.MANIFEST_PARSED)
        return self.manifest

    def find_partition(self, partition_name: str) -> PartitionEntry:
        if self.manifest is None:
            self.read_manifest()
        assert self.state in (ReconstructionState.MANIFEST_PARSED, ReconstructionState.PARTITION_FOUND), "find_partition() in state %s" % self.state.name
        try:
            partition = self.manifest.find_partition(partition_name)
            if partition is None:
                raise PartitionNotFound(partition_name, self.manifest.partition_names())
            if len(partition.operations) == 0:
                raise EmptyPartition("Partition %r has no operations" % partition_name, partition=partition_name)
            if partition.target_size <= 0:
                raise EmptyPartition("Partition %r has target size 0" % partition_name, partition=partition_name)
        except ExtractionError as e:
            self._fail(e)
            raise
        self.partition = partition
        logging.info("Found partition %r: target_size=%d operations=%d" % (partition.name, partition.target_size, len(partition.operations)))
        self._transition(ReconstructionState.PARTITION_FOUND)
        return partition

    def run(self, partition_name: str, output_path: str) -> str:
        self.find_partition(partition_name)
        return self.reconstruct(output_path)

    def reconstruct(self, output_path: str) -> str:
        assert self.state == ReconstructionState.PARTITION_FOUND, "reconstruct() in state %s" % self.state.name
        self._transition(ReconstructionState.RECONSTRUCTING)
        block_size = self.manifest.block_size
        tracker = ProgressTracker(self.progress, sum(op.dst_length(block_size) for op in self.partition.operations))
        try:
            try:
                f = open(output_path, 'wb')
            except OSError as e:
                raise WriteFailed("Cannot create %r: %s" % (output_path, e)) from e
            with f:
                try:
                    f.truncate(self.partition.target_size)
                except OSError as e:
                    raise WriteFailed("Cannot preallocate %r to %d bytes: %s" % (output_path, self.partition.target_size, e)) from e
                for op in self.partition.operations:
                    self._check_cancelled()
                    try:
                        self.apply_operation(f, op)
                    except ExtractionError as e:
                        raise e.add_context(operation_index=op.index)
                    tracker.advance(op.dst_length(block_size))
            if self.verify_image:
                if self.partition.declared_hash:
                    self.check_image_hash(output_path)
                else:
                    logging.warning("Partition %r has no image hash in the manifest, skipping verification" % self.partition.name)
        except ExtractionError as e:
            self._fail(e)
            self._remove_output(output_path)
            raise
        except BaseException:
            self._transition(ReconstructionState.FAILED)
            self._remove_output(output_path)
            raise
        tracker.finish()
        self._transition(ReconstructionState.DONE)
        logging.info("Partition %r written to %r (%d bytes)" % (self.partition.name, output_path, self.partition.target_size))
        return output_path

    # noinspection PyMethodMayBeStatic
    def _remove_output(self, output_path: str):
        if os.path.exists(output_path):
            logging.info("Removing incomplete output %r" % output_path)
            os.unlink(output_path)

    def apply_operation(self, f: BinaryIO, op: Operation):
        block_size = self.manifest.block_size
        dst_length = op.dst_length(block_size)
        if dst_length == 0:
            logging.debug("Skipping operation %d (%s) without destination bytes" % (op.index, op.type_name))
            return
        end_block = max(extent.start_block + extent.num_blocks for extent in op.dst_extents)
        if end_block * block_size > self.partition.target_size:
            raise SizeMismatch("Operation %d (%s) writes up to byte %d, beyond target size %d" % (op.index, op.type_name, end_block * block_size, self.partition.target_size))
        logging.debug("Applying %r" % op)
        if op.type == OperationType.ZERO:
            self.apply_zero(f, op)
        elif op.type == OperationType.REPLACE:
            self.apply_replace(f, op)
        elif op.type in (OperationType.REPLACE_BZ, OperationType.REPLACE_XZ):
            self.apply_compressed(f, op)
        else:
            raise UnsupportedOperation("Operation %d has unsupported type %s (supported: REPLACE, REPLACE_BZ, REPLACE_XZ, ZERO)" % (op.index, op.type_name), op_type=op.type)

    def apply_zero(self, f: BinaryIO, op: Operation):
        block_size = self.manifest.block_size
        zeros = memoryview(bytes(ZERO_CHUNK_SIZE))
        for extent in op.dst_extents:
            pos = extent.byte_offset(block_size)
            end_pos = pos + extent.byte_length(block_size)
            while pos < end_pos:
                self._check_cancelled()
                n = min(ZERO_CHUNK_SIZE, end_pos - pos)
                write_at(f, pos, zeros[:n])
                pos += n

    def _data_range(self, op: Operation):
        if op.data_offset is None or op.data_length is None:
            raise SizeMismatch("Operation %d (%s) has no data_offset/data_length" % (op.index, op.type_name))
        return self.data_start + op.data_offset, op.data_length

    def _check_data_hash(self, op: Operation, digest: bytes):
        if self.verify_hashes and op.data_sha256 and digest != op.data_sha256:
            raise HashMismatch("Operation %d (%s): data SHA-256 %s does not match manifest %s" % (op.index, op.type_name, digest.hex(), op.data_sha256.hex()))

    def apply_replace(self, f: BinaryIO, op: Operation):
        start, length = self._data_range(op)
        dst_length = op.dst_length(self.manifest.block_size)
        if length != dst_length:
            raise SizeMismatch("Operation %d (REPLACE): data_length %d does not match extent size %d" % (op.index, length, dst_length))
        writer = ExtentWriter(f, op, self.manifest.block_size)
        sha256 = hashlib.sha256()
        for chunk in self.source.iter_range(start, length, COPY_CHUNK_SIZE, self.cancel_event):
            sha256.update(chunk)
            writer.write(chunk)
        writer.finish()
        self._check_data_hash(op, sha256.digest())

    def apply_compressed(self, f: BinaryIO, op: Operation):
        start, length = self._data_range(op)
        data = self.source.read_at(start, length)
        self._check_data_hash(op, hashlib.sha256(data).digest())
        codec = self.codecs.get(op.type)
        if codec is None:
            raise CodecUnavailable("No decoder configured for %s" % op.type_name)
        buf = codec.decompress(data)
        dst_length = op.dst_length(self.manifest.block_size)
        if len(buf) != dst_length:
            logging.warning("Operation %d (%s): decompressed size %d differs from extent size %d, %s" % (op.index, op.type_name, len(buf), dst_length, "truncating" if len(buf) > dst_length else "data is short"))
            buf = buf[:dst_length]
        writer = ExtentWriter(f, op, self.manifest.block_size)
        writer.write(buf)
        writer.finish()

    def check_image_hash(self, output_path: str):
        sha256 = hashlib.sha256()
        with open(output_path, 'rb') as f:
            while True:
                self._check_cancelled()
                buf = f.read(COPY_CHUNK_SIZE)
                if len(buf) == 0:
                    break
                sha256.update(buf)
        if sha256.digest() != self.partition.declared_hash:
            raise HashMismatch("Image SHA-256 %s does not match manifest %s" % (sha256.hexdigest(), self.partition.declared_hash.hex()))
        logging.info("Image hash of %r verified" % output_path)
