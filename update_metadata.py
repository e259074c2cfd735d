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


"""
Message classes for the subset of chromeos_update_engine/update_metadata.proto needed to
read full OTA payloads. The schema is assembled as a FileDescriptorProto at import time and
registered in a private descriptor pool, so no generated _pb2 module has to be shipped and
an installed copy of the generated module cannot clash with it.

InstallOperation.type is declared as uint32 instead of the enum of the upstream schema. Both
are varints on the wire, but an enum field would map unknown values to the default (REPLACE).
"""

from google.protobuf import descriptor_pb2, descriptor_pool, message_factory


PACKAGE = "chromeos_update_engine"

FieldDescriptorProto = descriptor_pb2.FieldDescriptorProto
OPTIONAL = FieldDescriptorProto.LABEL_OPTIONAL
REPEATED = FieldDescriptorProto.LABEL_REPEATED


def _field(message, name: str, number: int, field_type: int, label: int = OPTIONAL, type_name: str = None, default: str = None):
    field = message.field.add(name=name, number=number, type=field_type, label=label)
    if type_name is not None:
        field.type_name = ".%s.%s" % (PACKAGE, type_name)
    if default is not None:
        field.default_value = default
    return field


def build_file_descriptor() -> descriptor_pb2.FileDescriptorProto:
    fdp = descriptor_pb2.FileDescriptorProto(name="update_metadata.proto", package=PACKAGE, syntax="proto2")

    extent = fdp.message_type.add(name="Extent")
    _field(extent, "start_block", 1, FieldDescriptorProto.TYPE_UINT64)
    _field(extent, "num_blocks", 2, FieldDescriptorProto.TYPE_UINT64)

    partition_info = fdp.message_type.add(name="PartitionInfo")
    _field(partition_info, "size", 1, FieldDescriptorProto.TYPE_UINT64)
    _field(partition_info, "hash", 2, FieldDescriptorProto.TYPE_BYTES)

    install_operation = fdp.message_type.add(name="InstallOperation")
    _field(install_operation, "type", 1, FieldDescriptorProto.TYPE_UINT32)
    _field(install_operation, "data_offset", 2, FieldDescriptorProto.TYPE_UINT64)
    _field(install_operation, "data_length", 3, FieldDescriptorProto.TYPE_UINT64)
    _field(install_operation, "src_extents", 4, FieldDescriptorProto.TYPE_MESSAGE, REPEATED, "Extent")
    _field(install_operation, "src_length", 5, FieldDescriptorProto.TYPE_UINT64)
    _field(install_operation, "dst_extents", 6, FieldDescriptorProto.TYPE_MESSAGE, REPEATED, "Extent")
    _field(install_operation, "dst_length", 7, FieldDescriptorProto.TYPE_UINT64)
    _field(install_operation, "data_sha256_hash", 8, FieldDescriptorProto.TYPE_BYTES)
    _field(install_operation, "src_sha256_hash", 9, FieldDescriptorProto.TYPE_BYTES)

    partition_update = fdp.message_type.add(name="PartitionUpdate")
    _field(partition_update, "partition_name", 1, FieldDescriptorProto.TYPE_STRING)
    _field(partition_update, "run_postinstall", 2, FieldDescriptorProto.TYPE_BOOL)
    _field(partition_update, "postinstall_path", 3, FieldDescriptorProto.TYPE_STRING)
    _field(partition_update, "filesystem_type", 4, FieldDescriptorProto.TYPE_STRING)
    _field(partition_update, "old_partition_info", 6, FieldDescriptorProto.TYPE_MESSAGE, type_name="PartitionInfo")
    _field(partition_update, "new_partition_info", 7, FieldDescriptorProto.TYPE_MESSAGE, type_name="PartitionInfo")
    _field(partition_update, "operations", 8, FieldDescriptorProto.TYPE_MESSAGE, REPEATED, "InstallOperation")

    manifest = fdp.message_type.add(name="DeltaArchiveManifest")
    _field(manifest, "block_size", 3, FieldDescriptorProto.TYPE_UINT32, default="4096")
    _field(manifest, "signatures_offset", 4, FieldDescriptorProto.TYPE_UINT64)
    _field(manifest, "signatures_size", 5, FieldDescriptorProto.TYPE_UINT64)
    _field(manifest, "minor_version", 12, FieldDescriptorProto.TYPE_UINT32)
    _field(manifest, "partitions", 13, FieldDescriptorProto.TYPE_MESSAGE, REPEATED, "PartitionUpdate")
    _field(manifest, "max_timestamp", 14, FieldDescriptorProto.TYPE_INT64)
    _field(manifest, "partial_update", 16, FieldDescriptorProto.TYPE_BOOL)
    _field(manifest, "security_patch_level", 18, FieldDescriptorProto.TYPE_STRING)
    return fdp


pool = descriptor_pool.DescriptorPool()
pool.AddSerializedFile(build_file_descriptor().SerializeToString())


def _message_class(name: str):
    return message_factory.GetMessageClass(pool.FindMessageTypeByName("%s.%s" % (PACKAGE, name)))


Extent = _message_class("Extent")
PartitionInfo = _message_class("PartitionInfo")
InstallOperation = _message_class("InstallOperation")
PartitionUpdate = _message_class("PartitionUpdate")
DeltaArchiveManifest = _message_class("DeltaArchiveManifest")
