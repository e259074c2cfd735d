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


import os
import time
import zlib
import zipfile
import threading
import pytest
import zip_container
from zip_container import ZipContainer, CompressionMethod, ContainerEntryLocation, CentralDirectoryHeader, MaterializationCache, iter_entry_data, materialize_entry, parse_zip64_extra
from range_source import LocalRangeSource
from errors import InvalidContainer, EntryNotFound, RequiresMaterialization, UnsupportedCompression
from conftest import write_zip, pattern_bytes


@pytest.fixture
def ota_zip(tmp_path):
    payload = pattern_bytes(300000, seed=7)
    # Compressible, so the deflated entry is smaller than its uncompressed size
    boot = b'ANDROID!' + b'\0' * 100000
    path = write_zip(tmp_path / "ota.zip", {
        "META-INF/com/android/metadata": (b'ota-type=AB\n', zipfile.ZIP_DEFLATED),
        "payload.bin": (payload, zipfile.ZIP_STORED),
        "images/boot.img": (boot, zipfile.ZIP_DEFLATED),
    })
    return path, payload, boot


def test_list_entries(ota_zip):
    path, _, _ = ota_zip
    with LocalRangeSource(path) as source:
        assert ZipContainer.looks_like_zip(source)
        container = ZipContainer(source)
        assert sorted(container.names()) == ["META-INF/com/android/metadata", "images/boot.img", "payload.bin"]


def test_stored_entry_is_directly_addressable(ota_zip):
    path, payload, _ = ota_zip
    with LocalRangeSource(path) as source:
        location = ZipContainer(source).direct_range("payload.bin")
        assert location.compression_method == CompressionMethod.STORED
        assert not location.requires_materialization
        assert location.length == len(payload)
        assert source.read_at(location.start_byte, location.length) == payload


def test_deflated_entry_requires_materialization(ota_zip):
    path, _, boot = ota_zip
    with LocalRangeSource(path) as source:
        container = ZipContainer(source)
        with pytest.raises(RequiresMaterialization) as exc_info:
            container.direct_range("images/boot.img")
        location = exc_info.value.location
        assert location.compression_method == CompressionMethod.DEFLATE
        assert location.uncompressed_size == len(boot)
        assert location.length < len(boot)


def test_find_by_base_name(ota_zip):
    path, _, _ = ota_zip
    with LocalRangeSource(path) as source:
        container = ZipContainer(source)
        assert container.find("BOOT.IMG").name == "images/boot.img"
        assert container.find("vendor.img") is None
        with pytest.raises(EntryNotFound) as exc_info:
            container.locate("vendor.img")
        assert "payload.bin" in exc_info.value.available


def test_not_a_zip(tmp_path):
    path = tmp_path / "random.bin"
    path.write_bytes(pattern_bytes(5000))
    with LocalRangeSource(str(path)) as source:
        assert not ZipContainer.looks_like_zip(source)
        with pytest.raises(InvalidContainer):
            ZipContainer(source)


def test_zip_with_comment(tmp_path):
    path = str(tmp_path / "comment.zip")
    with zipfile.ZipFile(path, 'w') as zf:
        zf.writestr("payload.bin", b'CrAU' + b'\0' * 20)
        zf.comment = b'PK\x05\x06 fake record inside the comment'
    with LocalRangeSource(path) as source:
        assert ZipContainer(source).names() == ["payload.bin"]


def test_unsupported_method(tmp_path):
    path = str(tmp_path / "bz.zip")
    with zipfile.ZipFile(path, 'w') as zf:
        zf.writestr("payload.bin", b'data' * 100, compress_type=zipfile.ZIP_BZIP2)
    with LocalRangeSource(path) as source:
        with pytest.raises(UnsupportedCompression):
            ZipContainer(source).locate("payload.bin")


def test_zip64_extra_field():
    header = CentralDirectoryHeader.create(
        magic=0x02014b50, version_made_by=45, version_needed=45, flags=0, compression_method=0,
        mod_time=0, mod_date=0, crc32=0, compressed_size=0xffffffff, uncompressed_size=0xffffffff,
        name_length=0, extra_length=0, comment_length=0, disk_start=0, internal_attr=0,
        external_attr=0, local_header_offset=1234)
    extra = b'\x0a\x00\x04\x00abcd' + b'\x01\x00\x10\x00' + (5 * 2**32).to_bytes(8, "little") + (6 * 2**32).to_bytes(8, "little")
    values = parse_zip64_extra(extra, header)
    assert values == {"uncompressed_size": 5 * 2**32, "compressed_size": 6 * 2**32, "local_header_offset": 1234}
    with pytest.raises(InvalidContainer):
        parse_zip64_extra(b'\x01\x00\x08\x00' + b'\0' * 8, header)


def test_materialize_deflated_entry(ota_zip, tmp_path):
    path, _, boot = ota_zip
    dest = str(tmp_path / "boot.img")
    progress = []
    with LocalRangeSource(path) as source:
        location = ZipContainer(source).locate("boot.img")
        materialize_entry(source, location, dest, progress=lambda *args: progress.append(args))
    with open(dest, 'rb') as f:
        assert f.read() == boot
    assert not os.path.exists(dest + ".part")
    assert progress[-1][0] == 100


def test_materialize_crc_mismatch(ota_zip, tmp_path):
    path, _, _ = ota_zip
    dest = str(tmp_path / "boot.img")
    with LocalRangeSource(path) as source:
        location = ZipContainer(source).locate("boot.img")
        bad_location = location._replace(crc32=location.crc32 ^ 1)
        with pytest.raises(InvalidContainer):
            materialize_entry(source, bad_location, dest)
    assert not os.path.exists(dest)
    assert not os.path.exists(dest + ".part")


def test_truncated_deflate_stream(ota_zip, tmp_path):
    path, _, _ = ota_zip
    with LocalRangeSource(path) as source:
        location = ZipContainer(source).locate("boot.img")
        short = location._replace(length=location.length // 2)
        with pytest.raises(InvalidContainer):
            b''.join(iter_entry_data(source, short))


class CountingSource(LocalRangeSource):
    def __init__(self, path):
        super().__init__(path)
        self.read_calls = 0
        self.lock = threading.Lock()

    def _read(self, start, length):
        with self.lock:
            self.read_calls += 1
        return super()._read(start, length)


def test_reader_is_bounded_by_queue(tmp_path):
    data = pattern_bytes(64 * 1024)
    path = write_zip(tmp_path / "big.zip", {"payload.bin": (data, zipfile.ZIP_STORED)})
    with CountingSource(path) as source:
        location = ZipContainer(source).locate("payload.bin")
        source.read_calls = 0
        chunks = iter_entry_data(source, location, chunk_size=1024, queue_depth=2)
        first = next(chunks)
        time.sleep(0.3)
        # one chunk consumed, queue_depth chunks queued, one chunk waiting in put()
        assert source.read_calls <= 1 + 2 + 1
        rest = b''.join(chunks)
    assert first + rest == data
    assert source.read_calls == 64


def test_cache_reuses_materialized_entry(ota_zip, tmp_path, monkeypatch):
    path, _, boot = ota_zip
    cache_dir = str(tmp_path / "cache")
    calls = []
    original = zip_container.materialize_entry

    def counting_materialize(*args, **kwargs):
        calls.append(args[2])
        return original(*args, **kwargs)
    monkeypatch.setattr(zip_container, "materialize_entry", counting_materialize)
    cache = MaterializationCache(cache_dir)
    with LocalRangeSource(path) as source:
        location = ZipContainer(source).locate("boot.img")
        first = cache.get(source, location)
        second = cache.get(source, location)
    assert first == second
    assert len(calls) == 1
    assert os.path.basename(first).endswith("images_boot.img")
    with open(first, 'rb') as f:
        assert f.read() == boot
    cache.cleanup()
    assert not os.path.exists(first)
    assert not os.path.exists(cache_dir)


def test_cache_concurrent_callers_materialize_once(ota_zip, tmp_path, monkeypatch):
    path, _, _ = ota_zip
    calls = []
    original = zip_container.materialize_entry

    def slow_materialize(*args, **kwargs):
        calls.append(args[2])
        time.sleep(0.2)
        return original(*args, **kwargs)
    monkeypatch.setattr(zip_container, "materialize_entry", slow_materialize)
    cache = MaterializationCache(str(tmp_path / "cache"), keep=True)
    results = []
    with LocalRangeSource(path) as source:
        location = ZipContainer(source).locate("boot.img")
        threads = [threading.Thread(target=lambda: results.append(cache.get(source, location))) for _ in range(3)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
    assert len(calls) == 1
    assert len(set(results)) == 1
    cache.cleanup()
    assert os.path.exists(results[0])
    assert results[0] not in MaterializationCache._key_locks


@pytest.mark.parametrize("keep", [False, True])
def test_cache_cleanup_forgets_path_locks(ota_zip, tmp_path, keep):
    path, _, _ = ota_zip
    cache = MaterializationCache(str(tmp_path / "cache"), keep=keep)
    with LocalRangeSource(path) as source:
        location = ZipContainer(source).locate("boot.img")
        cached = cache.get(source, location)
    assert cached in MaterializationCache._key_locks
    cache.cleanup()
    assert cached not in MaterializationCache._key_locks
    assert os.path.exists(cached) == keep


def test_stored_entry_crc_is_checked(tmp_path):
    data = b'stored entry data'
    path = write_zip(tmp_path / "s.zip", {"boot.img": (data, zipfile.ZIP_STORED)})
    with LocalRangeSource(path) as source:
        location = ZipContainer(source).locate("boot.img")
        assert location.crc32 == zlib.crc32(data)
        assert b''.join(iter_entry_data(source, location)) == data
        assert isinstance(location, ContainerEntryLocation)
