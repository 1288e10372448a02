# Copyright 2025 ApeCloud, Inc.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Hash-slot allocation for Redis Cluster.

The assignment is a pure function of the master count: slots are split into
contiguous ranges ordered by master ordinal, and the first ``16384 % masters``
ordinals take one extra slot. Previous assignments are only consulted to report
which ranges change owner; moving the data is left to external tooling.
"""

import hashlib
import json
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Tuple

from redisop.exceptions import InvalidSpecError

TOTAL_SLOTS = 16384


@dataclass(frozen=True)
class SlotRange:
    start: int
    end: int

    @property
    def size(self) -> int:
        return self.end - self.start + 1

    def __str__(self) -> str:
        return f"{self.start}-{self.end}"


@dataclass(frozen=True)
class SlotMove:
    """A range whose owner differs between two assignments"""

    start: int
    end: int
    source: Optional[int]
    target: Optional[int]

    def to_dict(self) -> Dict[str, Any]:
        return {"start": self.start, "end": self.end, "source": self.source, "target": self.target}


class SlotAssignment:
    """Ordinal-indexed contiguous slot ranges"""

    def __init__(self, ranges: Iterable[SlotRange]):
        self.ranges: Tuple[SlotRange, ...] = tuple(ranges)

    def __len__(self) -> int:
        return len(self.ranges)

    def __getitem__(self, ordinal: int) -> SlotRange:
        return self.ranges[ordinal]

    def __eq__(self, other: object) -> bool:
        return isinstance(other, SlotAssignment) and self.ranges == other.ranges

    def __hash__(self) -> int:
        return hash(self.ranges)

    def __repr__(self) -> str:
        return f"SlotAssignment({', '.join(str(r) for r in self.ranges)})"

    def owner_of(self, slot: int) -> Optional[int]:
        for ordinal, slot_range in enumerate(self.ranges):
            if slot_range.start <= slot <= slot_range.end:
                return ordinal
        return None

    def covers_all(self) -> bool:
        """True when the ranges partition [0, TOTAL_SLOTS) without gaps or overlaps"""
        expected = 0
        for slot_range in self.ranges:
            if slot_range.start != expected or slot_range.end < slot_range.start:
                return False
            expected = slot_range.end + 1
        return expected == TOTAL_SLOTS

    def fingerprint(self) -> str:
        canonical = json.dumps(self.to_list(), sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:12]

    def to_list(self) -> List[Dict[str, int]]:
        return [
            {"master": ordinal, "start": slot_range.start, "end": slot_range.end}
            for ordinal, slot_range in enumerate(self.ranges)
        ]

    @classmethod
    def from_list(cls, items: Optional[List[Dict[str, int]]]) -> Optional["SlotAssignment"]:
        if not items:
            return None
        ordered = sorted(items, key=lambda item: int(item["master"]))
        return cls(SlotRange(int(item["start"]), int(item["end"])) for item in ordered)

    def render(self) -> str:
        """Text form mounted into the master ConfigMap, one ordinal per line"""
        return "".join(f"{ordinal} {slot_range}\n" for ordinal, slot_range in enumerate(self.ranges))


def allocate_slots(masters: int) -> SlotAssignment:
    """
    Split all hash slots across masters

    Args:
        masters: Number of cluster masters, at least 1

    Returns:
        SlotAssignment whose ranges cover [0, 16383] exactly
    """
    if masters < 1:
        raise InvalidSpecError(f"cluster needs at least one master, got {masters}")
    if masters > TOTAL_SLOTS:
        raise InvalidSpecError(f"cluster cannot have more than {TOTAL_SLOTS} masters, got {masters}")

    base, remainder = divmod(TOTAL_SLOTS, masters)
    ranges = []
    start = 0
    for ordinal in range(masters):
        size = base + 1 if ordinal < remainder else base
        ranges.append(SlotRange(start, start + size - 1))
        start += size
    return SlotAssignment(ranges)


def diff_assignments(previous: Optional[SlotAssignment], current: SlotAssignment) -> List[SlotMove]:
    """
    Compute the ranges that change owner between two assignments

    Walks every boundary of both assignments once, so the result is a list of
    maximal ranges with a single (source, target) pair each.
    """
    if previous is None or previous == current:
        return []

    boundaries = {0, TOTAL_SLOTS}
    for assignment in (previous, current):
        for slot_range in assignment.ranges:
            boundaries.add(slot_range.start)
            boundaries.add(slot_range.end + 1)
    points = sorted(b for b in boundaries if 0 <= b <= TOTAL_SLOTS)

    moves: List[SlotMove] = []
    for start, next_start in zip(points, points[1:]):
        source = previous.owner_of(start)
        target = current.owner_of(start)
        if source == target:
            continue
        end = next_start - 1
        if moves and moves[-1].end + 1 == start and (moves[-1].source, moves[-1].target) == (source, target):
            moves[-1] = SlotMove(moves[-1].start, end, source, target)
        else:
            moves.append(SlotMove(start, end, source, target))
    return moves
