"""
Unit tests for timezone resolution and the dose-window calculator.
"""
from datetime import date, datetime
from types import SimpleNamespace

import pytest
import pytz

from clock import InvalidTimezone, local_date_and_minute, resolve_zone
from models import DoseSchedule, MealRelation
from schedule import (
    InvalidSchedule,
    check_unique_times,
    current_slot,
    get_policy,
    normalize_hhmm,
    period_label,
    slot_time_for,
)


def slot(period, hhmm, pills=1, is_active=True):
    return SimpleNamespace(period=MealRelation(period), hhmm=hhmm, pills=pills, is_active=is_active)


def minutes(hhmm):
    h, m = hhmm.split(":")
    return int(h) * 60 + int(m)


@pytest.fixture
def grace():
    return get_policy("grace")


# --- clock ---

def test_local_date_and_minute_in_bangkok():
    instant = datetime(2026, 3, 2, 0, 5, tzinfo=pytz.utc)
    assert local_date_and_minute(instant, "Asia/Bangkok") == (date(2026, 3, 2), 425)


def test_local_date_rolls_over_before_utc_midnight():
    instant = datetime(2026, 3, 1, 17, 30, tzinfo=pytz.utc)
    assert local_date_and_minute(instant, "Asia/Bangkok") == (date(2026, 3, 2), 30)


def test_naive_instants_are_read_as_utc():
    assert local_date_and_minute(datetime(2026, 3, 2, 0, 5), "Asia/Bangkok") == (date(2026, 3, 2), 425)


def test_dst_transition_uses_tz_database():
    # New York springs forward on 2026-03-08
    before = datetime(2026, 3, 7, 12, 0, tzinfo=pytz.utc)
    after = datetime(2026, 3, 8, 12, 0, tzinfo=pytz.utc)
    assert local_date_and_minute(before, "America/New_York")[1] == 7 * 60
    assert local_date_and_minute(after, "America/New_York")[1] == 8 * 60


def test_missing_zone_falls_back_to_default():
    assert resolve_zone(None).zone == "Asia/Bangkok"
    assert resolve_zone("  ").zone == "Asia/Bangkok"


def test_unknown_zone_fails_closed():
    with pytest.raises(InvalidTimezone):
        resolve_zone("Mars/Olympus_Mons")


# --- HH:MM handling ---

def test_normalize_hhmm_pads_and_validates():
    assert normalize_hhmm("7:5") == "07:05"
    assert normalize_hhmm(" 20:00 ") == "20:00"
    for bad in ("24:00", "12:60", "noon", "", "1200"):
        with pytest.raises(InvalidSchedule):
            normalize_hhmm(bad)


def test_slot_time_defaults_to_canonical_period_time():
    assert slot_time_for("BEFORE_BED", None) == "20:00"
    assert slot_time_for("AFTER_LUNCH", "12:30") == "12:30"
    with pytest.raises(InvalidSchedule):
        slot_time_for("CUSTOM", None)
    with pytest.raises(InvalidSchedule):
        slot_time_for("BRUNCH", "10:00")


def test_duplicate_active_times_rejected():
    with pytest.raises(InvalidSchedule):
        check_unique_times([{"hhmm": "07:00"}, {"hhmm": "07:00", "is_active": True}])
    check_unique_times([{"hhmm": "07:00"}, {"hhmm": "07:00", "is_active": False}])


def test_period_label_is_thai():
    assert period_label(MealRelation.BEFORE_BREAKFAST) == "ก่อนอาหารเช้า"
    assert period_label("BEFORE_BED") == "ก่อนนอน"


# --- window calculator ---

def test_before_meal_slot_has_one_hour_grace(grace):
    slots = [slot("BEFORE_BREAKFAST", "07:00")]
    assert current_slot(slots, minutes("06:59"), grace) is None
    assert current_slot(slots, minutes("07:00"), grace).hhmm == "07:00"
    assert current_slot(slots, minutes("07:59"), grace).end == minutes("08:00")
    assert current_slot(slots, minutes("08:00"), grace) is None


def test_grace_window_is_cut_by_next_slot(grace):
    slots = [slot("BEFORE_BREAKFAST", "07:00"), slot("AFTER_BREAKFAST", "07:30")]
    assert current_slot(slots, minutes("07:29"), grace).hhmm == "07:00"
    assert current_slot(slots, minutes("07:30"), grace).hhmm == "07:30"


def test_before_bed_is_open_until_midnight(grace):
    slots = [slot("BEFORE_BED", "20:00")]
    assert current_slot(slots, minutes("23:59"), grace).end == 1440


def test_after_meal_slot_open_until_next_slot(grace):
    slots = [slot("AFTER_LUNCH", "12:00"), slot("AFTER_BREAKFAST", "08:00")]
    assert current_slot(slots, minutes("11:59"), grace).hhmm == "08:00"
    assert current_slot(slots, minutes("12:00"), grace).hhmm == "12:00"
    assert current_slot(slots, minutes("23:59"), grace).hhmm == "12:00"
    assert current_slot(slots, minutes("07:59"), grace) is None


def test_tied_slot_times_first_one_owns_the_window(grace):
    slots = [slot("BEFORE_BREAKFAST", "07:00", pills=1), slot("CUSTOM", "7:00", pills=2), slot("AFTER_LUNCH", "12:00")]
    current = current_slot(slots, minutes("07:10"), grace)
    assert (current.period, current.pills) == (MealRelation.BEFORE_BREAKFAST, 1)
    assert current.end == minutes("08:00")
    assert current_slot(slots, minutes("09:00"), grace) is None


def test_active_slot_wraps_dose_schedule_rows(grace):
    row = DoseSchedule(period=MealRelation.AFTER_DINNER, hhmm="18:00", pills=3, is_active=True)
    current = current_slot([row], minutes("18:30"), grace)
    assert current.schedule is row
    assert (current.period, current.pills, current.end) == (MealRelation.AFTER_DINNER, 3, 1440)


def test_inactive_and_empty_schedules(grace):
    assert current_slot([], 600, grace) is None
    slots = [slot("AFTER_BREAKFAST", "08:00", is_active=False)]
    assert current_slot(slots, minutes("09:00"), grace) is None


def test_returned_slot_always_contains_the_minute(grace):
    slots = [
        slot("BEFORE_BREAKFAST", "07:00"),
        slot("AFTER_BREAKFAST", "08:00"),
        slot("BEFORE_LUNCH", "11:30"),
        slot("AFTER_DINNER", "18:00"),
        slot("BEFORE_BED", "21:00"),
    ]
    for minute in range(1440):
        found = current_slot(slots, minute, grace)
        if found is not None:
            assert found.start <= minute < found.end


def test_dynamic_policy_keeps_before_meal_open_until_next_slot():
    slots = [slot("BEFORE_BREAKFAST", "07:00"), slot("AFTER_DINNER", "18:00")]
    assert current_slot(slots, minutes("09:00"), get_policy("dynamic")).hhmm == "07:00"
    assert current_slot(slots, minutes("09:00"), get_policy("grace")) is None


def test_unknown_policy_name():
    with pytest.raises(ValueError):
        get_policy("fixed-hours")
