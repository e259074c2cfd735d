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


from typing import Callable, List, Optional


# progress(percent, bytes_done, bytes_total)
ProgressCallback = Callable[[int, int, int], None]


class ProgressTracker:
    """
    Counts processed bytes and calls the progress callback whenever the whole
    percentage changes, never once per chunk.
    """

    def __init__(self, callback: Optional[ProgressCallback], total: int):
        self.callback = callback
        self.total = total
        self.done = 0
        self.last_percent = -1

    def percent(self) -> int:
        if self.total <= 0:
            return 100
        return min(100, self.done * 100 // self.total)

    def advance(self, num_bytes: int):
        self.done += num_bytes
        self._report()

    def finish(self):
        self.done = max(self.done, self.total)
        self._report()

    def _report(self):
        if self.callback is None:
            return
        percent = self.percent()
        if percent != self.last_percent:
            self.last_percent = percent
            self.callback(percent, self.done, self.total)


class PhasedProgress:
    """
    Splits one 0..100 progress range over consecutive phases (e.g. materializing a
    deflated payload, then reconstructing from it) so the caller sees a single
    monotonic run. Each phase reports its own byte counts.
    """

    def __init__(self, callback: Optional[ProgressCallback], weights: List[int]):
        self.callback = callback
        self.weights = weights
        self.last_percent = -1

    def phase(self, index: int) -> Optional[ProgressCallback]:
        if self.callback is None:
            return None
        start = sum(self.weights[:index])
        span = self.weights[index]
        total_weight = sum(self.weights)

        def report(percent: int, done: int, total: int):
            overall = (start * 100 + span * percent) // total_weight
            if overall > self.last_percent:
                self.last_percent = overall
                self.callback(overall, done, total)
        return report
