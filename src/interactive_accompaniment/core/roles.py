"""
Lead/follow role resolution over sparse measure annotations.

Annotations are forward-filled: a measure without its own role inherits the
role of the nearest annotated measure before it.
"""

from __future__ import annotations

import bisect
import logging
import re
from typing import Iterable, Iterator, Optional

from interactive_accompaniment.core.types import (
    MeasureAnnotation,
    RoleDirective,
    RoleMode,
    RoleStrength,
    WaitDirective,
    WaitType,
)

logger = logging.getLogger(__name__)

# Base-tempo weight per role; 1.0 would ignore the performer entirely.
ROLE_FACTORS: dict[tuple[RoleMode, RoleStrength], float] = {
    (RoleMode.LEAD, RoleStrength.STRONG): 0.9,
    (RoleMode.LEAD, RoleStrength.MODERATE): 0.7,
    (RoleMode.LEAD, RoleStrength.LIGHT): 0.6,
    (RoleMode.FOLLOW, RoleStrength.STRONG): 0.1,
    (RoleMode.FOLLOW, RoleStrength.MODERATE): 0.3,
    (RoleMode.FOLLOW, RoleStrength.LIGHT): 0.4,
}

DEFAULT_ROLE = RoleDirective(RoleMode.FOLLOW, RoleStrength.MODERATE, 0.3)

_ROLE_TEXT = re.compile(r"^(lead|follow):(strong|moderate|light)$", re.IGNORECASE)
_WAIT_TEXT = re.compile(r"^wait(?::(\d+(?:\.\d+)?)\s*sec)?$", re.IGNORECASE)


def role_directive(
    mode: RoleMode | str,
    strength: RoleStrength | str = RoleStrength.MODERATE,
) -> RoleDirective:
    """Build a directive with the canonical blend factor for mode and strength."""
    mode = RoleMode(mode.lower()) if isinstance(mode, str) else mode
    strength = RoleStrength(strength.lower()) if isinstance(strength, str) else strength
    return RoleDirective(mode, strength, ROLE_FACTORS.get((mode, strength), 0.5))


def parse_role_text(text: str) -> Optional[RoleDirective]:
    """Parse a rehearsal mark such as ``Lead:strong``."""
    match = _ROLE_TEXT.match(text.strip())
    if not match:
        return None
    return role_directive(match.group(1), match.group(2))


def parse_wait_text(text: str) -> Optional[WaitDirective]:
    """Parse ``wait``, ``wait:2sec`` or ``listen``."""
    text = text.strip()
    match = _WAIT_TEXT.match(text)
    if match:
        duration = float(match.group(1)) if match.group(1) else None
        return WaitDirective(WaitType.WAIT, duration)
    if text.lower() == "listen":
        return WaitDirective(WaitType.LISTEN)
    return None


def resolve_role(
    annotations: Iterable[MeasureAnnotation],
    measure_number: int,
) -> RoleDirective:
    """
    Return the role in force at ``measure_number``.

    Args:
        annotations: Annotations sorted by measure number.
        measure_number: Target measure; pickups may be zero or negative.

    Returns:
        Role of the last annotation at or before the target, or DEFAULT_ROLE.
    """
    active = DEFAULT_ROLE
    for annotation in annotations:
        if annotation.measure_number > measure_number:
            break
        if annotation.role is not None:
            active = annotation.role
    return active


class MeasureAnnotations:
    """
    Ordered map of measure annotations keyed by measure number.

    Rehearsal patches merge into existing entries; ordering is maintained on
    insert so lookups never need a re-sort.
    """

    def __init__(self, annotations: Optional[Iterable[MeasureAnnotation]] = None):
        self._keys: list[int] = []
        self._entries: dict[int, MeasureAnnotation] = {}
        for annotation in annotations or ():
            self.apply(annotation)

    def __len__(self) -> int:
        return len(self._keys)

    def __iter__(self) -> Iterator[MeasureAnnotation]:
        return (self._entries[k] for k in self._keys)

    def __contains__(self, measure_number: int) -> bool:
        return measure_number in self._entries

    def __getitem__(self, measure_number: int) -> MeasureAnnotation:
        return self._entries[measure_number]

    def measure_numbers(self) -> list[int]:
        return list(self._keys)

    def apply(self, patch: MeasureAnnotation) -> MeasureAnnotation:
        """
        Merge ``patch`` into the map.

        Role and wait fields present on the patch replace the stored ones;
        absent fields leave the stored values untouched.
        """
        number = patch.measure_number
        existing = self._entries.get(number)
        if existing is None:
            entry = MeasureAnnotation(number, patch.role, patch.wait)
            bisect.insort(self._keys, number)
            self._entries[number] = entry
            logger.debug(f"Added annotation for measure {number}")
            return entry

        if patch.role is not None:
            existing.role = patch.role
        if patch.wait is not None:
            existing.wait = patch.wait
        logger.debug(f"Updated annotation for measure {number}")
        return existing

    def role_for(self, measure_number: int) -> RoleDirective:
        """Forward-filled role lookup."""
        i = bisect.bisect_right(self._keys, measure_number)
        while i > 0:
            i -= 1
            role = self._entries[self._keys[i]].role
            if role is not None:
                return role
        return DEFAULT_ROLE

    def wait_for(self, measure_number: int) -> Optional[WaitDirective]:
        """Wait directive attached to exactly this measure, if any."""
        entry = self._entries.get(measure_number)
        return entry.wait if entry else None

    def copy(self) -> MeasureAnnotations:
        return MeasureAnnotations(
            MeasureAnnotation(a.measure_number, a.role, a.wait) for a in self
        )

    def to_list(self) -> list[MeasureAnnotation]:
        return list(self)
