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


class ExtractionError(Exception):
    """
    Base class for all errors raised while locating, parsing or reconstructing a partition.
    The error kind is the class name, extra diagnostics (partition, strategy, source,
    operation_index, ...) are kept in self.context and rendered by __str__.
    """

    def __init__(self, message: str, **context):
        super().__init__(message)
        self.message = message
        self.context: Dict[str, object] = {k: v for k, v in context.items() if v is not None}

    @property
    def kind(self) -> str:
        return self.__class__.__name__

    def add_context(self, **context) -> "ExtractionError":
        for k, v in context.items():
            if v is not None:
                self.context.setdefault(k, v)
        return self

    def __str__(self):
        if len(self.context) == 0:
            return self.message
        return "%s [%s]" % (self.message, ", ".join("%s=%r" % (k, v) for k, v in sorted(self.context.items())))


class ResourceUnreachable(ExtractionError):
    pass


class RangeNotSatisfiable(ExtractionError):
    pass


class ShortRead(ExtractionError):
    def __init__(self, message: str, expected: int = None, actual: int = None, **context):
        super().__init__(message, expected=expected, actual=actual, **context)
        self.expected = expected
        self.actual = actual


class InvalidContainer(ExtractionError):
    pass


class UnsupportedCompression(InvalidContainer):
    pass


class EntryNotFound(ExtractionError):
    def __init__(self, entry_name: str, available: List[str] = None, **context):
        super().__init__("Entry %r not found in container" % entry_name, **context)
        self.entry_name = entry_name
        self.available = list(available or [])


class RequiresMaterialization(ExtractionError):
    """
    Raised when a caller asks for a directly addressable byte range of a compressed ZIP entry.
    The entry location is attached so the caller can materialize it instead.
    """

    def __init__(self, location, **context):
        super().__init__("Entry %r is compressed (method %s), it must be materialized before random access" % (location.entry_name, location.compression_method.name), **context)
        self.location = location


class ManifestDecodeFailed(ExtractionError):
    pass


class PartitionNotFound(ExtractionError):
    def __init__(self, partition: str, available: List[str], **context):
        super().__init__("Partition %r not found, available partitions: %s" % (partition, ", ".join(available) or "<none>"), partition=partition, **context)
        self.available = list(available)


class EmptyPartition(ExtractionError):
    pass


class SizeMismatch(ExtractionError):
    pass


class CodecUnavailable(ExtractionError):
    pass


class UnsupportedOperation(ExtractionError):
    def __init__(self, message: str, op_type: int = None, **context):
        super().__init__(message, op_type=op_type, **context)
        self.op_type = op_type


class WriteFailed(ExtractionError):
    pass


class HashMismatch(ExtractionError):
    pass


class Cancelled(ExtractionError):
    def __init__(self, message: str = "Operation cancelled", **context):
        super().__init__(message, **context)


class StrategiesExhausted(ExtractionError):
    """
    Every extraction strategy failed. The error of the last attempted strategy is the primary error.
    """

    def __init__(self, attempts: List[Tuple[str, ExtractionError]], **context):
        self.attempts = list(attempts)
        if len(self.attempts) == 0:
            message = "No extraction strategy applies to this source"
        else:
            message = "All extraction strategies failed (%s), last error: %s" % (", ".join(name for name, _ in self.attempts), self.attempts[-1][1])
        super().__init__(message, **context)

    @property
    def primary(self) -> Optional[ExtractionError]:
        if len(self.attempts) == 0:
            return None
        return self.attempts[-1][1]

    @property
    def kind(self) -> str:
        if self.primary is None:
            return self.__class__.__name__
        return self.primary.kind
