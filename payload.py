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
import base64
import logging
from enum import IntEnum
from construct import Struct, Int32ub, Int64ub  # type: ignore
from google.protobuf import json_format
from google.protobuf.message import DecodeError
from construct_typing import TypedContainer
from errors import InvalidContainer, ManifestDecodeFailed, ShortRead, RangeNotSatisfiable
from range_source import RangeSource
import update_metadata


PAYLOAD_MAGIC = 0x43724155  # b'CrAU'
PAYLOAD_HEADER_SIZE = 24
SUPPORTED_MAJOR_VERSION = 2
DEFAULT_BLOCK_SIZE = 4096


class OperationType(IntEnum):
    REPLACE = 0
    REPLACE_BZ = 1
    MOVE = 2
    BSDIFF = 3
    SOURCE_COPY = 4
    SOURCE_BSDIFF = 5
    ZERO = 6
    DISCARD = 7
    REPLACE_XZ = 8
    PUFFDIFF = 9
    BROTLI_BSDIFF = 10
    ZUCCHINI = 11
    LZ4DIFF_BSDIFF = 12
    LZ4DIFF_PUFFDIFF = 13


SUPPORTED_OPERATIONS = (OperationType.REPLACE, OperationType.REPLACE_BZ, OperationType.REPLACE_XZ, OperationType.ZERO)


def operation_type_name(op_type: int) -> str:
    try:
        return OperationType(op_type).name
    except ValueError:
        return "UNKNOWN_%d" % op_type


class PayloadHeader(TypedContainer):
    """
    Fixed header at the start of an update payload, all fields big endian:
    magic "CrAU", major version, manifest size, metadata signature size.
    """
    magic: int
    version: int
    manifest_size: int
    signature_size: int
    # noinspection PyUnresolvedReferences
    construct_struct = Struct(
        "magic" / Int32ub,
        "version" / Int64ub,
        "manifest_size" / Int64ub,
        "signature_size" / Int32ub,
    )

    def validate(self):
        if self.magic != PAYLOAD_MAGIC:
            raise InvalidContainer("Bad payload magic %r, expected b'CrAU'" % self.magic.to_bytes(4, "big"))
        if self.version != SUPPORTED_MAJOR_VERSION:
            raise InvalidContainer("Unsupported payload major version %d" % self.version)
        if self.manifest_size == 0:
            raise InvalidContainer("Payload header declares an empty manifest")

    @property
    def header_total_size(self) -> int:
        return PAYLOAD_HEADER_SIZE + self.manifest_size + self.signature_size


assert PayloadHeader.sizeof() == PAYLOAD_HEADER_SIZE


def read_header(source: RangeSource, base_offset: int = 0) -> PayloadHeader:
    try:
        header = PayloadHeader.read_from(source, base_offset)
    except (ShortRead, RangeNotSatisfiable) as e:
        raise InvalidContainer("Short payload header at offset %d: %s" % (base_offset, e), source=source.ref) from e
    try:
        header.validate()
    except InvalidContainer as e:
        raise e.add_context(source=source.ref)
    logging.debug("Payload header at %d: %r" % (base_offset, header))
    return header


class Extent(NamedTuple):
    start_block: int
    num_blocks: int

    def byte_offset(self, block_size: int) -> int:
        return self.start_block * block_size

    def byte_length(self, block_size: int) -> int:
        return self.num_blocks * block_size


class Operation:
    """
    One install operation. data_offset is relative to the first byte after the payload
    header, manifest and metadata signature.
    """

    def __init__(self, index: int, op_type: int, dst_extents: List[Extent], data_offset: Optional[int] = None, data_length: Optional[int] = None, data_sha256: Optional[bytes] = None):
        self.index = index
        self.type = op_type
        self.dst_extents = dst_extents
        self.data_offset = data_offset
        self.data_length = data_length
        self.data_sha256 = data_sha256

    @property
    def type_name(self) -> str:
        return operation_type_name(self.type)

    @property
    def is_supported(self) -> bool:
        return self.type in SUPPORTED_OPERATIONS

    def dst_length(self, block_size: int) -> int:
        return sum(extent.byte_length(block_size) for extent in self.dst_extents)

    def __repr__(self):
        return "Operation(index=%d, type=%s, data_offset=%r, data_length=%r, dst_extents=%r)" % (self.index, self.type_name, self.data_offset, self.data_length, self.dst_extents)


class PartitionEntry:
    def __init__(self, name: str, target_size: int, operations: List[Operation], declared_size: Optional[int] = None, declared_hash: Optional[bytes] = None):
        self.name = name
        self.target_size = target_size
        self.operations = operations
        self.declared_size = declared_size
        self.declared_hash = declared_hash

    def __repr__(self):
        return "PartitionEntry(name=%r, target_size=%d, operations=%d)" % (self.name, self.target_size, len(self.operations))


class Manifest:
    def __init__(self, block_size: int, partitions: List[PartitionEntry], minor_version: Optional[int] = None, max_timestamp: Optional[int] = None):
        self.block_size = block_size
        self.partitions = partitions
        self.minor_version = minor_version
        self.max_timestamp = max_timestamp

    def partition_names(self) -> List[str]:
        return [partition.name for partition in self.partitions]

    def find_partition(self, name: str) -> Optional[PartitionEntry]:
        for partition in self.partitions:
            if partition.name == name:
                return partition
        return None


def camel_case(snake_name: str) -> str:
    first, *rest = snake_name.split("_")
    return first + "".join(word.capitalize() for word in rest)


def get_field(raw: Dict, snake_name: str, default=None):
    """
    Looks up a decoded message field under its snake_case or camelCase spelling
    """
    if snake_name in raw:
        return raw[snake_name]
    return raw.get(camel_case(snake_name), default)


def get_int(raw: Dict, snake_name: str, default: Optional[int] = None) -> Optional[int]:
    value = get_field(raw, snake_name)
    if value is None:
        return default
    try:
        # 64 bit integers are strings in the JSON mapping
        return int(value)
    except (TypeError, ValueError) as e:
        raise ManifestDecodeFailed("Field %r has non-integer value %r" % (snake_name, value)) from e


def get_bytes(raw: Dict, snake_name: str) -> Optional[bytes]:
    value = get_field(raw, snake_name)
    if value is None or isinstance(value, bytes):
        return value
    try:
        return base64.b64decode(value, validate=True)
    except (TypeError, ValueError) as e:
        raise ManifestDecodeFailed("Field %r is not valid base64" % snake_name) from e


def normalize_operation(index: int, raw: Dict) -> Operation:
    op_type = get_field(raw, "type", 0)
    if isinstance(op_type, str) and not op_type.isdigit():
        if op_type not in OperationType.__members__:
            raise ManifestDecodeFailed("Unknown operation type %r" % op_type, operation_index=index)
        op_type = OperationType[op_type]
    dst_extents = [Extent(get_int(extent, "start_block", 0), get_int(extent, "num_blocks", 0)) for extent in get_field(raw, "dst_extents", [])]
    return Operation(
        index=index,
        op_type=int(op_type),
        dst_extents=dst_extents,
        data_offset=get_int(raw, "data_offset"),
        data_length=get_int(raw, "data_length"),
        data_sha256=get_bytes(raw, "data_sha256_hash"),
    )


def normalize_partition(raw: Dict, block_size: int) -> PartitionEntry:
    name = get_field(raw, "partition_name")
    if not name:
        raise ManifestDecodeFailed("Partition without a name in manifest")
    operations = [normalize_operation(index, op) for index, op in enumerate(get_field(raw, "operations", []))]
    info = get_field(raw, "new_partition_info") or {}
    declared_size = get_int(info, "size")
    if declared_size:
        target_size = declared_size
    else:
        end_block = 0
        for op in operations:
            for extent in op.dst_extents:
                end_block = max(end_block, extent.start_block + extent.num_blocks)
        target_size = end_block * block_size
    return PartitionEntry(name=name, target_size=target_size, operations=operations, declared_size=declared_size, declared_hash=get_bytes(info, "hash"))


def normalize_manifest(raw: Dict) -> Manifest:
    """
    Maps a decoded manifest (either field spelling) onto Manifest/PartitionEntry/Operation
    """
    block_size = get_int(raw, "block_size") or DEFAULT_BLOCK_SIZE
    partitions = [normalize_partition(partition, block_size) for partition in get_field(raw, "partitions", [])]
    return Manifest(block_size=block_size, partitions=partitions, minor_version=get_int(raw, "minor_version"), max_timestamp=get_int(raw, "max_timestamp"))


def decode_manifest_bytes(buf: bytes) -> Manifest:
    message = update_metadata.DeltaArchiveManifest()
    try:
        message.ParseFromString(buf)
    except DecodeError as e:
        raise ManifestDecodeFailed("Cannot decode manifest: %s" % e) from e
    return normalize_manifest(json_format.MessageToDict(message))


def decode_manifest(source: RangeSource, base_offset: int, header: PayloadHeader) -> Manifest:
    """
    Reads the manifest following the header at base_offset and decodes it. The metadata
    signature after the manifest is skipped without verification.
    """
    try:
        buf = source.read_at(base_offset + PAYLOAD_HEADER_SIZE, header.manifest_size)
    except (ShortRead, RangeNotSatisfiable) as e:
        raise ManifestDecodeFailed("Truncated manifest (%d bytes declared): %s" % (header.manifest_size, e), source=source.ref) from e
    try:
        manifest = decode_manifest_bytes(buf)
    except ManifestDecodeFailed as e:
        raise e.add_context(source=source.ref)
    logging.info("Manifest: block_size=%d minor_version=%r partitions=%r" % (manifest.block_size, manifest.minor_version, manifest.partition_names()))
    return manifest
