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


from typing import TypeVar, Type
from io import BytesIO
from construct import Struct, StreamError  # type: ignore
from errors import ShortRead


# TypeVar is required so that parse returns the right type (of the sub-class).
# https://stackoverflow.com/a/46064289
# noinspection PyTypeChecker
T = TypeVar('T', bound='TypedContainer')


class TypedContainer:
    """
    Base class for a typed fixed-size record for use with construct. Usage instructions:
    * Make your own class with TypedContainer as superclass
    * Define instance fields with typing (e.g. bytes or int)
    * Set the class variable construct_struct to the actual construct Struct() definition
    * Records can be parsed from a buffer (parse), from a RangeSource at a given offset
      (read_from) or created from keyword arguments (create) and serialized with build()
    """
    construct_struct: Struct

    @classmethod
    def parse(cls: Type[T], buf: bytes) -> T:
        """
        Parses a buffer, raises ShortRead if the buffer is smaller than the record
        """
        if len(buf) < cls.sizeof():
            raise ShortRead("Truncated %s record" % cls.__name__, expected=cls.sizeof(), actual=len(buf))
        return cls.parse_stream(BytesIO(buf))

    @classmethod
    def parse_stream(cls: Type[T], stream) -> T:
        self = cls()
        try:
            construct_container = cls.construct_struct.parse_stream(stream)
        except StreamError as e:
            raise ShortRead("Truncated %s record: %s" % (cls.__name__, e), expected=cls.sizeof()) from e
        for k, v in dict(construct_container).items():
            if k.startswith("_"):
                continue
            self.__setattr__(k, v)
        return self

    @classmethod
    def read_from(cls: Type[T], source, offset: int) -> T:
        """
        Reads and parses one record located at offset of a RangeSource
        """
        return cls.parse(source.read_at(offset, cls.sizeof()))

    @classmethod
    def create(cls: Type[T], **fields) -> T:
        self = cls()
        for field in cls.construct_struct.subcons:
            if field.name in fields:
                self.__setattr__(field.name, fields.pop(field.name))
        if len(fields) > 0:
            raise TypeError("Unknown fields for %s: %r" % (cls.__name__, sorted(fields)))
        return self

    @classmethod
    def sizeof(cls) -> int:
        return cls.construct_struct.sizeof()

    def build(self) -> bytes:
        return self.__class__.construct_struct.build(self.__dict__)

    def __str__(self):
        string_list = [self.__class__.__name__]
        for k, v in sorted(self.__dict__.items()):
            string_list.append("    %s = %r" % (k, v))
        return "\n".join(string_list)

    def __repr__(self):
        field_params = []
        # Use correct order
        for field in self.construct_struct.subcons:
            if field.name in self.__dict__:
                field_params.append("%s=%r" % (field.name, self.__getattribute__(field.name)))
        return "%s(%s)" % (self.__class__.__name__, ", ".join(field_params))

    def __eq__(self, other: T):
        if type(self) is not type(other):
            return False
        return self.__dict__ == other.__dict__
