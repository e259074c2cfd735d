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


from typing import Dict, Iterator, Optional
import os
import re
import mmap
import logging
import mimetypes
import threading
from enum import Enum, auto
from urllib.parse import urlparse, unquote
import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry
from errors import ResourceUnreachable, RangeNotSatisfiable, ShortRead, Cancelled


# Upper bound for a single fetch (remote GET or local slice), larger reads are split
MAX_READ_SIZE = 4 * 1024 * 1024
# Default chunk size for streaming copies
COPY_CHUNK_SIZE = 1024 * 1024
DEFAULT_TIMEOUT = 30
DEFAULT_MAX_RETRIES = 3
USER_AGENT = "ota-partition-extractor/1.0"

CONTENT_RANGE_RE = re.compile(r'^bytes\s+(\d+)-(\d+)/(\d+|\*)$')


class SourceKind(Enum):
    LOCAL = auto()
    REMOTE = auto()


class RangeSource:
    """
    Byte-addressable resource. read(start, end) uses an inclusive end offset and either
    returns exactly end - start + 1 bytes or raises (RangeNotSatisfiable, ShortRead,
    ResourceUnreachable).
    """
    kind: SourceKind
    ref: str

    def __init__(self, ref: str):
        self.ref = ref

    @property
    def size_known(self) -> bool:
        raise NotImplementedError("size_known must be implemented in subclass (%s)" % self.__class__.__name__)

    def size(self) -> int:
        raise NotImplementedError("size() must be implemented in subclass (%s)" % self.__class__.__name__)

    def content_type(self) -> Optional[str]:
        return None

    @property
    def name(self) -> str:
        return os.path.basename(self.ref)

    def _read(self, start: int, length: int) -> bytes:
        raise NotImplementedError("_read() must be implemented in subclass (%s)" % self.__class__.__name__)

    def read(self, start: int, end: int) -> bytes:
        if start < 0 or end < start - 1:
            raise ValueError("Invalid range %d-%d" % (start, end))
        length = end - start + 1
        if length == 0:
            return b''
        if self.size_known:
            total = self.size()
            if start >= total:
                raise RangeNotSatisfiable("Range %d-%d starts beyond end of resource (size %d)" % (start, end, total), source=self.ref)
            if end >= total:
                raise ShortRead("Range %d-%d exceeds end of resource (size %d)" % (start, end, total), expected=length, actual=total - start, source=self.ref)
        if length <= MAX_READ_SIZE:
            return self._read(start, length)
        return b''.join(self.iter_range(start, length, MAX_READ_SIZE))

    def read_at(self, offset: int, length: int) -> bytes:
        return self.read(offset, offset + length - 1)

    def iter_range(self, offset: int, length: int, chunk_size: int = COPY_CHUNK_SIZE, cancel_event: threading.Event = None) -> Iterator[bytes]:
        """
        Yields the range [offset, offset + length) in chunks of at most chunk_size bytes
        """
        assert 0 < chunk_size <= MAX_READ_SIZE, "Invalid chunk_size=%r" % chunk_size
        pos = offset
        end_pos = offset + length
        while pos < end_pos:
            if cancel_event is not None and cancel_event.is_set():
                raise Cancelled(source=self.ref)
            next_pos = min(end_pos, pos + chunk_size)
            yield self.read(pos, next_pos - 1)
            pos = next_pos

    def close(self):
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


class LocalRangeSource(RangeSource):
    kind = SourceKind.LOCAL

    def __init__(self, path: str):
        super().__init__(path)
        self.path = path
        self.mmap: Optional[mmap.mmap] = None
        try:
            self.file_size = os.stat(path).st_size
            self.fh = open(path, 'rb')
        except OSError as e:
            raise ResourceUnreachable("Cannot open %r: %s" % (path, e), source=path) from e
        # mmap refuses zero-length files
        if self.file_size > 0:
            self.mmap = mmap.mmap(self.fh.fileno(), 0, access=mmap.ACCESS_READ)

    @property
    def size_known(self) -> bool:
        return True

    def size(self) -> int:
        return self.file_size

    def content_type(self) -> Optional[str]:
        return mimetypes.guess_type(self.path)[0]

    def _read(self, start: int, length: int) -> bytes:
        buf = self.mmap[start:start + length]
        if len(buf) != length:
            raise ShortRead("Short read at %d from %r" % (start, self.path), expected=length, actual=len(buf), source=self.path)
        return buf

    def close(self):
        if self.mmap is not None:
            self.mmap.close()
            self.mmap = None
        self.fh.close()


def create_session(max_retries: int = DEFAULT_MAX_RETRIES) -> requests.Session:
    session = requests.Session()
    retry = Retry(
        total=max_retries,
        backoff_factor=0.5,
        status_forcelist=[429, 500, 502, 503, 504]
    )
    adapter = HTTPAdapter(max_retries=retry)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    session.headers["User-Agent"] = USER_AGENT
    return session


class HttpRangeSource(RangeSource):
    """
    Remote resource read with HTTP range requests. Size and content type are probed
    lazily (HEAD, falling back to a one byte ranged GET) on first use.
    """
    kind = SourceKind.REMOTE

    def __init__(self, url: str, timeout: float = DEFAULT_TIMEOUT, max_retries: int = DEFAULT_MAX_RETRIES, headers: Dict[str, str] = None, session: requests.Session = None):
        super().__init__(url)
        self.url = url
        self.timeout = timeout
        self.headers = dict(headers or {})
        self.own_session = session is None
        self.session = session if session is not None else create_session(max_retries)
        self._probed = False
        self._size: Optional[int] = None
        self._content_type: Optional[str] = None

    @property
    def name(self) -> str:
        return os.path.basename(unquote(urlparse(self.url).path))

    def probe(self):
        if self._probed:
            return
        try:
            r = self.session.head(self.url, headers=self.headers, timeout=self.timeout, allow_redirects=True)
        except requests.RequestException as e:
            raise ResourceUnreachable("HEAD %s failed: %s" % (self.url, e), source=self.url) from e
        if r.status_code >= 400 and r.status_code not in (403, 405):
            raise ResourceUnreachable("HEAD %s returned HTTP %d" % (self.url, r.status_code), source=self.url)
        if r.ok:
            if r.headers.get("Content-Length") is not None:
                self._size = int(r.headers["Content-Length"])
            self._content_type = r.headers.get("Content-Type")
            if r.headers.get("Accept-Ranges", "").lower() != "bytes":
                logging.warning("Server for %s does not advertise 'Accept-Ranges: bytes', ranged reads may fail" % self.url)
        if self._size is None:
            self._size = self._probe_size_with_range()
        logging.info("Remote source %s: size=%r content_type=%r" % (self.url, self._size, self._content_type))
        self._probed = True

    def _probe_size_with_range(self) -> Optional[int]:
        headers = dict(self.headers)
        headers["Range"] = "bytes=0-0"
        try:
            with self.session.get(self.url, headers=headers, timeout=self.timeout, stream=True) as r:
                if r.status_code != 206:
                    raise ResourceUnreachable("Ranged size probe of %s returned HTTP %d" % (self.url, r.status_code), source=self.url)
                if self._content_type is None:
                    self._content_type = r.headers.get("Content-Type")
                m = CONTENT_RANGE_RE.match(r.headers.get("Content-Range", ""))
        except requests.RequestException as e:
            raise ResourceUnreachable("GET %s failed: %s" % (self.url, e), source=self.url) from e
        if m is None or m.group(3) == "*":
            return None
        return int(m.group(3))

    @property
    def size_known(self) -> bool:
        self.probe()
        return self._size is not None

    def size(self) -> int:
        self.probe()
        if self._size is None:
            raise ResourceUnreachable("Size of %s is unknown" % self.url, source=self.url)
        return self._size

    def content_type(self) -> Optional[str]:
        self.probe()
        return self._content_type

    def _read(self, start: int, length: int) -> bytes:
        headers = dict(self.headers)
        headers["Range"] = "bytes=%d-%d" % (start, start + length - 1)
        try:
            r = self.session.get(self.url, headers=headers, timeout=self.timeout)
        except requests.RequestException as e:
            raise ResourceUnreachable("GET %s (%s) failed: %s" % (self.url, headers["Range"], e), source=self.url) from e
        if r.status_code == 416:
            raise RangeNotSatisfiable("Range %s not satisfiable" % headers["Range"], source=self.url)
        if r.status_code == 200:
            raise RangeNotSatisfiable("Server ignored Range header %s (HTTP 200)" % headers["Range"], source=self.url)
        if r.status_code != 206:
            raise ResourceUnreachable("GET %s (%s) returned HTTP %d" % (self.url, headers["Range"], r.status_code), source=self.url)
        data = r.content
        if len(data) < length:
            raise ShortRead("Short ranged read at %d from %s" % (start, self.url), expected=length, actual=len(data), source=self.url)
        return data[:length]

    def iter_download(self, chunk_size: int = COPY_CHUNK_SIZE, cancel_event: threading.Event = None) -> Iterator[bytes]:
        """
        Streams the whole resource with one plain GET, for servers ignoring Range
        """
        expected = self._size
        received = 0
        try:
            with self.session.get(self.url, headers=self.headers, timeout=self.timeout, stream=True) as r:
                if r.status_code != 200:
                    raise ResourceUnreachable("GET %s returned HTTP %d" % (self.url, r.status_code), source=self.url)
                if expected is None and r.headers.get("Content-Length") is not None:
                    expected = int(r.headers["Content-Length"])
                for chunk in r.iter_content(chunk_size):
                    if cancel_event is not None and cancel_event.is_set():
                        raise Cancelled("Download of %s cancelled" % self.url, source=self.url)
                    received += len(chunk)
                    yield chunk
        except requests.RequestException as e:
            raise ResourceUnreachable("GET %s failed: %s" % (self.url, e), source=self.url) from e
        if expected is not None and received < expected:
            raise ShortRead("Download of %s ended early" % self.url, expected=expected, actual=received, source=self.url)

    def close(self):
        if self.own_session:
            self.session.close()


def is_remote_ref(ref: str) -> bool:
    return re.match(r'^https?://', ref, re.IGNORECASE) is not None


def open_range_source(ref: str, **http_options) -> RangeSource:
    if is_remote_ref(ref):
        return HttpRangeSource(ref, **http_options)
    if "://" in ref:
        raise ResourceUnreachable("Unsupported URL scheme in %r" % ref, source=ref)
    return LocalRangeSource(ref)
