"""
Dose-slot arithmetic: HH:MM normalization, period labels and the window
rules that decide which slot of a prescription is current.

A window is the half-open minute-of-day range [start, end). Each period maps
to one rule kind in a policy table, so changing how long a slot stays open is
a data change rather than a new branch.
"""
# schedule.py

import re
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Sequence

import config
from clock import MINUTES_PER_DAY
from models import DoseSchedule, MealRelation

HHMM_RE = re.compile(r"^(\d{1,2}):(\d{1,2})$")

PERIOD_LABELS = {
    MealRelation.BEFORE_BREAKFAST: "ก่อนอาหารเช้า",
    MealRelation.AFTER_BREAKFAST: "หลังอาหารเช้า",
    MealRelation.BEFORE_LUNCH: "ก่อนอาหารเที่ยง",
    MealRelation.AFTER_LUNCH: "หลังอาหารเที่ยง",
    MealRelation.BEFORE_DINNER: "ก่อนอาหารเย็น",
    MealRelation.AFTER_DINNER: "หลังอาหารเย็น",
    MealRelation.BEFORE_BED: "ก่อนนอน",
    MealRelation.CUSTOM: "อื่นๆ",
}

# Default time for a slot entered without one; CUSTOM has no default
CANONICAL_HHMM = {
    MealRelation.BEFORE_BREAKFAST: "07:00",
    MealRelation.AFTER_BREAKFAST: "08:00",
    MealRelation.BEFORE_LUNCH: "11:00",
    MealRelation.AFTER_LUNCH: "12:00",
    MealRelation.BEFORE_DINNER: "15:00",
    MealRelation.AFTER_DINNER: "16:00",
    MealRelation.BEFORE_BED: "20:00",
}


class InvalidSchedule(ValueError):
    pass


def normalize_hhmm(value: str) -> str:
    """Return a zero-padded 24h "HH:MM" string or raise InvalidSchedule."""
    match = HHMM_RE.match((value or "").strip())
    if not match:
        raise InvalidSchedule(f"Invalid time '{value}', expected HH:MM")
    hour, minute = int(match.group(1)), int(match.group(2))
    if hour > 23 or minute > 59:
        raise InvalidSchedule(f"Invalid time '{value}', expected HH:MM")
    return f"{hour:02d}:{minute:02d}"


def hhmm_to_minutes(hhmm: str) -> int:
    hour, minute = normalize_hhmm(hhmm).split(":")
    return int(hour) * 60 + int(minute)


def parse_period(value) -> MealRelation:
    try:
        return MealRelation(value)
    except ValueError:
        raise InvalidSchedule(f"Unknown period '{value}'")


def period_label(period) -> str:
    return PERIOD_LABELS.get(parse_period(period), "อื่นๆ")


def slot_time_for(period, hhmm: Optional[str]) -> str:
    """Resolve the time of a new slot, falling back to the period's canonical time."""
    period = parse_period(period)
    if hhmm:
        return normalize_hhmm(hhmm)
    default = CANONICAL_HHMM.get(period)
    if default is None:
        raise InvalidSchedule(f"Period {period} needs an explicit time")
    return default


def check_unique_times(entries) -> None:
    """Reject schedules where two active slots share a time of day."""
    seen = set()
    for entry in entries:
        if not entry.get("is_active", True):
            continue
        hhmm = entry["hhmm"]
        if hhmm in seen:
            raise InvalidSchedule(f"Duplicate slot time {hhmm}")
        seen.add(hhmm)


# ==========================================
# Window rules
# ==========================================
class WindowRule(str, Enum):
    GRACE = "grace"  # [start, min(start + grace, next slot))
    UNTIL_MIDNIGHT = "until-midnight"  # [start, 24:00)
    UNTIL_NEXT_SLOT = "until-next-slot"  # [start, next slot)


@dataclass(frozen=True)
class WindowPolicy:
    name: str
    rules: Dict[MealRelation, WindowRule]
    default_rule: WindowRule = WindowRule.UNTIL_NEXT_SLOT
    grace_minutes: int = 60
    cadence_minutes: int = 30

    def rule_for(self, period) -> WindowRule:
        return self.rules.get(parse_period(period), self.default_rule)

    def window_end(self, period, start: int, hard_stop: int) -> int:
        rule = self.rule_for(period)
        if rule is WindowRule.GRACE:
            return min(start + self.grace_minutes, hard_stop)
        if rule is WindowRule.UNTIL_MIDNIGHT:
            return MINUTES_PER_DAY
        return hard_stop


def _grace_policy():
    return WindowPolicy(
        name="grace",
        rules={
            MealRelation.BEFORE_BREAKFAST: WindowRule.GRACE,
            MealRelation.BEFORE_LUNCH: WindowRule.GRACE,
            MealRelation.BEFORE_DINNER: WindowRule.GRACE,
            MealRelation.BEFORE_BED: WindowRule.UNTIL_MIDNIGHT,
        },
        grace_minutes=config.GRACE_MINUTES,
        cadence_minutes=config.CADENCE_MINUTES,
    )


def _dynamic_policy():
    # Every slot stays open until the next one starts
    return WindowPolicy(name="dynamic", rules={}, cadence_minutes=config.CADENCE_MINUTES)


POLICIES = {
    "grace": _grace_policy,
    "dynamic": _dynamic_policy,
}


def get_policy(name: Optional[str] = None) -> WindowPolicy:
    name = name or config.WINDOW_POLICY
    try:
        return POLICIES[name]()
    except KeyError:
        raise ValueError(f"Unknown window policy '{name}', choose from {sorted(POLICIES)}")


@dataclass(frozen=True)
class ActiveSlot:
    schedule: DoseSchedule
    hhmm: str
    start: int
    end: int

    @property
    def period(self):
        return self.schedule.period

    @property
    def pills(self):
        return self.schedule.pills


def sorted_active(schedules: Sequence) -> List:
    return sorted((s for s in schedules if s.is_active), key=lambda s: hhmm_to_minutes(s.hhmm))


def current_slot(schedules: Sequence, minute_of_day: int, policy: WindowPolicy) -> Optional[ActiveSlot]:
    """Return the active slot whose window contains ``minute_of_day``.

    Of slots sharing a time, only the first in input order counts. A slot
    closes at the next strictly later time.
    """
    slots = sorted_active(schedules)
    starts = [hhmm_to_minutes(s.hhmm) for s in slots]
    for i, (slot, start) in enumerate(zip(slots, starts)):
        if i and starts[i - 1] == start:
            continue
        hard_stop = next((later for later in starts[i:] if later > start), MINUTES_PER_DAY)
        end = policy.window_end(slot.period, start, hard_stop)
        if start <= minute_of_day < end:
            return ActiveSlot(schedule=slot, hhmm=normalize_hhmm(slot.hhmm), start=start, end=end)
    return None
