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


import re
import hashlib
import threading
import zipfile
import http.server
from typing import Dict, List, Tuple
import pytest
import update_metadata
from payload import PayloadHeader, PAYLOAD_MAGIC


BLOCK_SIZE = 4096


class PayloadBuilder:
    """
    Builds full OTA payloads: CrAU header, manifest, metadata signature, then the data blobs
    """

    def __init__(self, block_size: int = BLOCK_SIZE):
        self.manifest = update_metadata.DeltaArchiveManifest()
        if block_size is not None:
            self.manifest.block_size = block_size
        self.manifest.minor_version = 0
        self.blobs = bytearray()

    def add_partition(self, name: str, size: int = None, image_hash: bytes = None):
        partition = self.manifest.partitions.add(partition_name=name)
        if size is not None:
            partition.new_partition_info.size = size
        if image_hash is not None:
            partition.new_partition_info.hash = image_hash
        return partition

    def add_operation(self, partition, op_type: int, dst_extents: List[Tuple[int, int]], data: bytes = None, data_sha256: bytes = None):
        op = partition.operations.add(type=int(op_type))
        if data is not None:
            op.data_offset = len(self.blobs)
            op.data_length = len(data)
            op.data_sha256_hash = data_sha256 if data_sha256 is not None else hashlib.sha256(data).digest()
            self.blobs += data
        for start_block, num_blocks in dst_extents:
            op.dst_extents.add(start_block=start_block, num_blocks=num_blocks)
        return op

    def build(self, signature: bytes = b'\xaa' * 16, version: int = 2) -> bytes:
        manifest_bytes = self.manifest.SerializeToString()
        header = PayloadHeader.create(magic=PAYLOAD_MAGIC, version=version, manifest_size=len(manifest_bytes), signature_size=len(signature))
        return header.build() + manifest_bytes + signature + bytes(self.blobs)


def write_zip(path, entries: Dict[str, Tuple[bytes, int]]):
    """
    entries: name => (data, zipfile.ZIP_STORED or zipfile.ZIP_DEFLATED)
    """
    with zipfile.ZipFile(path, 'w') as zf:
        for name, (data, compression) in entries.items():
            zf.writestr(zipfile.ZipInfo(name), data, compress_type=compression)
    return str(path)


def pattern_bytes(length: int, seed: int = 1) -> bytes:
    out = bytearray()
    counter = 0
    while len(out) < length:
        out += hashlib.sha256(b"%d:%d" % (seed, counter)).digest()
        counter += 1
    return bytes(out[:length])


@pytest.fixture
def payload_builder():
    return PayloadBuilder()


class RangeRequestHandler(http.server.BaseHTTPRequestHandler):
    # noinspection PyShadowingBuiltins
    def log_message(self, format, *args):
        pass

    def do_HEAD(self):
        self.serve(head=True)

    def do_GET(self):
        self.serve(head=False)

    def serve(self, head: bool):
        server = self.server
        range_header = self.headers.get("Range")
        server.requests.append((self.command, self.path, range_header))
        data = server.files.get(self.path)
        if data is None:
            self.send_error(404)
            return
        if head or range_header is None or not server.honor_ranges:
            self.send_response(200)
            if not head or server.head_content_length:
                self.send_header("Content-Length", str(len(data)))
            self.send_header("Content-Type", server.content_type)
            if server.honor_ranges:
                self.send_header("Accept-Ranges", "bytes")
            self.end_headers()
            if not head:
                self.wfile.write(data)
            return
        m = re.match(r'^bytes=(\d+)-(\d*)$', range_header)
        start = int(m.group(1))
        end = int(m.group(2)) if m.group(2) else len(data) - 1
        if start >= len(data):
            self.send_response(416)
            self.send_header("Content-Range", "bytes */%d" % len(data))
            self.send_header("Content-Length", "0")
            self.end_headers()
            return
        end = min(end, len(data) - 1)
        self.send_response(206)
        self.send_header("Content-Range", "bytes %d-%d/%d" % (start, end, len(data)))
        self.send_header("Content-Length", str(end - start + 1))
        self.send_header("Content-Type", server.content_type)
        self.end_headers()
        self.wfile.write(data[start:end + 1])


class RangeHttpServer:
    def __init__(self):
        self.httpd = http.server.ThreadingHTTPServer(("127.0.0.1", 0), RangeRequestHandler)
        self.httpd.daemon_threads = True
        self.httpd.files = {}
        self.httpd.requests = []
        self.httpd.honor_ranges = True
        self.httpd.head_content_length = True
        self.httpd.content_type = "application/octet-stream"
        self.thread = threading.Thread(target=self.httpd.serve_forever, daemon=True)

    def add_file(self, name: str, data: bytes) -> str:
        self.httpd.files["/" + name] = data
        return self.url(name)

    def url(self, name: str) -> str:
        return "http://127.0.0.1:%d/%s" % (self.httpd.server_address[1], name)

    @property
    def requests(self):
        return self.httpd.requests

    def ranged_bytes(self) -> int:
        total = 0
        for method, path, range_header in self.requests:
            if method == "GET" and range_header is not None:
                m = re.match(r'^bytes=(\d+)-(\d+)$', range_header)
                total += int(m.group(2)) - int(m.group(1)) + 1
        return total


@pytest.fixture
def http_server():
    server = RangeHttpServer()
    server.thread.start()
    yield server
    server.httpd.shutdown()
    server.httpd.server_close()
