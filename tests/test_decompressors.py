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


import bz2
import lzma
import shutil
import pytest
import decompressors
from decompressors import Decompressor, DecompressorChain, ModuleDecompressor, CommandDecompressor
from errors import CodecUnavailable


DATA = b'partition data ' * 1000


class CountingDecompressor(ModuleDecompressor):
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.load_calls = 0

    def load(self):
        self.load_calls += 1
        super().load()


class UnavailableDecompressor(Decompressor):
    name = "unavailable"

    def load(self):
        raise CodecUnavailable("not installed")


def test_default_chains_decode():
    assert decompressors.XZ.decompress(lzma.compress(DATA)) == DATA
    assert decompressors.BZIP2.decompress(bz2.compress(DATA)) == DATA


def test_falls_back_when_primary_is_missing():
    chain = DecompressorChain("XZ", [
        ModuleDecompressor("missing", "no_such_lzma_module"),
        ModuleDecompressor("lzma", "lzma", error_names=("LZMAError",)),
    ])
    assert chain.decompress(lzma.compress(DATA)) == DATA
    assert [c.name for c in chain.loaded_candidates()] == ["lzma"]


def test_falls_back_when_primary_cannot_decode():
    chain = DecompressorChain("XZ", [
        ModuleDecompressor("bz2", "bz2"),
        ModuleDecompressor("lzma", "lzma", error_names=("LZMAError",)),
    ])
    assert chain.decompress(lzma.compress(DATA)) == DATA


def test_unavailable_only_when_all_candidates_fail():
    chain = DecompressorChain("XZ", [UnavailableDecompressor(), ModuleDecompressor("missing", "no_such_lzma_module")])
    with pytest.raises(CodecUnavailable):
        chain.decompress(lzma.compress(DATA))
    chain = DecompressorChain("XZ", [ModuleDecompressor("lzma", "lzma", error_names=("LZMAError",))])
    with pytest.raises(CodecUnavailable):
        chain.decompress(b'not xz data')


def test_candidates_are_loaded_once():
    candidate = CountingDecompressor("bz2", "bz2")
    chain = DecompressorChain("BZip2", [candidate])
    for _ in range(3):
        assert chain.decompress(bz2.compress(DATA)) == DATA
    assert candidate.load_calls == 1


def test_missing_command():
    with pytest.raises(CodecUnavailable):
        CommandDecompressor("missing", ["no-such-decompressor-binary", "-dc"]).load()


@pytest.mark.skipif(shutil.which("xz") is None, reason="xz command not installed")
def test_xz_command():
    candidate = CommandDecompressor("xz", ["xz", "-dc"])
    candidate.load()
    assert candidate.decompress(lzma.compress(DATA)) == DATA
    with pytest.raises(CodecUnavailable):
        candidate.decompress(b'garbage')


@pytest.mark.skipif(shutil.which("bzip2") is None, reason="bzip2 command not installed")
def test_bzip2_command_as_fallback():
    chain = DecompressorChain("BZip2", [UnavailableDecompressor(), CommandDecompressor("bzip2", ["bzip2", "-dc"])])
    assert chain.decompress(bz2.compress(DATA)) == DATA
