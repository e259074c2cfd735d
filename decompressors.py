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


from typing import List, Optional, Sequence, Tuple
import shutil
import logging
import importlib
import threading
import subprocess
from errors import CodecUnavailable


class Decompressor:
    """
    One way of decompressing a complete buffer. load() raises CodecUnavailable when the
    implementation cannot be used on this system, decompress() raises CodecUnavailable
    when it cannot decode the given data.
    """
    name: str

    def load(self):
        raise NotImplementedError("load() must be implemented in subclass (%s)" % self.__class__.__name__)

    def decompress(self, data: bytes) -> bytes:
        raise NotImplementedError("decompress() must be implemented in subclass (%s)" % self.__class__.__name__)


class ModuleDecompressor(Decompressor):
    """
    Python module with a module level decompress(bytes) -> bytes function (bz2, lzma, backports.lzma)
    """

    def __init__(self, name: str, module_name: str, error_names: Sequence[str] = ()):
        self.name = name
        self.module_name = module_name
        self.error_names = error_names
        self.module = None
        self.error_types: Tuple[type, ...] = (OSError, ValueError, EOFError)

    def load(self):
        if self.module is not None:
            return
        try:
            module = importlib.import_module(self.module_name)
        except ImportError as e:
            raise CodecUnavailable("Module %r is not available: %s" % (self.module_name, e)) from e
        self.error_types = self.error_types + tuple(getattr(module, error_name) for error_name in self.error_names if hasattr(module, error_name))
        self.module = module

    def decompress(self, data: bytes) -> bytes:
        try:
            return self.module.decompress(data)
        except self.error_types as e:
            raise CodecUnavailable("%s failed to decode %d bytes: %s" % (self.name, len(data), e)) from e


class CommandDecompressor(Decompressor):
    """
    External decompressor reading from stdin and writing to stdout, e.g. ["xz", "-dc"]
    """

    def __init__(self, name: str, cmd: List[str]):
        self.name = name
        self.cmd = cmd

    def load(self):
        if shutil.which(self.cmd[0]) is None:
            raise CodecUnavailable("Command %r not found in PATH" % self.cmd[0])

    def decompress(self, data: bytes) -> bytes:
        try:
            result = subprocess.run(self.cmd, input=data, stdout=subprocess.PIPE, stderr=subprocess.PIPE, check=True)
        except subprocess.CalledProcessError as e:
            raise CodecUnavailable("%r exited with code %d: %s" % (self.cmd, e.returncode, e.stderr.decode(errors="replace").strip())) from e
        except OSError as e:
            raise CodecUnavailable("Running %r failed: %s" % (self.cmd, e)) from e
        return result.stdout


class DecompressorChain:
    """
    Ranked list of decompressors for one codec. Candidates are loaded once per process,
    decompress() uses the first loaded candidate and falls back to the next one if it
    cannot decode the data.
    """

    def __init__(self, codec_name: str, candidates: List[Decompressor]):
        self.codec_name = codec_name
        self.candidates = candidates
        self._loaded: Optional[List[Decompressor]] = None
        self._load_lock = threading.Lock()
        self._announced: Optional[Decompressor] = None

    def loaded_candidates(self) -> List[Decompressor]:
        with self._load_lock:
            if self._loaded is None:
                self._loaded = []
                for candidate in self.candidates:
                    try:
                        candidate.load()
                    except CodecUnavailable as e:
                        logging.debug("%s decoder %s unavailable: %s" % (self.codec_name, candidate.name, e))
                        continue
                    self._loaded.append(candidate)
            return self._loaded

    def decompress(self, data: bytes) -> bytes:
        failures = []
        for candidate in self.loaded_candidates():
            try:
                result = candidate.decompress(data)
            except CodecUnavailable as e:
                logging.warning("%s decoder %s failed, trying next candidate: %s" % (self.codec_name, candidate.name, e))
                failures.append("%s: %s" % (candidate.name, e))
                continue
            if self._announced is not candidate:
                logging.info("Using %s decoder %s" % (self.codec_name, candidate.name))
                self._announced = candidate
            return result
        if len(failures) == 0:
            raise CodecUnavailable("No %s decoder available (tried %s)" % (self.codec_name, ", ".join(c.name for c in self.candidates)))
        raise CodecUnavailable("No %s decoder could decode the data (%s)" % (self.codec_name, "; ".join(failures)))


def xz_chain() -> DecompressorChain:
    return DecompressorChain("XZ", [
        ModuleDecompressor("lzma", "lzma", error_names=("LZMAError",)),
        ModuleDecompressor("backports.lzma", "backports.lzma", error_names=("LZMAError",)),
        CommandDecompressor("xz", ["xz", "-dc"]),
    ])


def bzip2_chain() -> DecompressorChain:
    return DecompressorChain("BZip2", [
        ModuleDecompressor("bz2", "bz2"),
        CommandDecompressor("bzip2", ["bzip2", "-dc"]),
    ])


XZ = xz_chain()
BZIP2 = bzip2_chain()
