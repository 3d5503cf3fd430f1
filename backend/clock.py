# clock.py
import datetime

import pytz

import config

MINUTES_PER_DAY = 24 * 60


class InvalidTimezone(ValueError):
    pass


def utc_now():
    return datetime.datetime.now(pytz.utc)


def resolve_zone(name=None):
    """Return the tzinfo for an IANA name, or the default zone when none is given.

    An unknown name raises InvalidTimezone instead of silently defaulting.
    """
    zone_name = (name or "").strip() or config.DEFAULT_TIMEZONE
    try:
        return pytz.timezone(zone_name)
    except pytz.UnknownTimeZoneError as e:
        raise InvalidTimezone(f"Unknown timezone: {zone_name}") from e


def as_utc(instant):
    # Naive datetimes coming out of the database are UTC
    if instant.tzinfo is None:
        return pytz.utc.localize(instant)
    return instant.astimezone(pytz.utc)


def local_date_and_minute(instant, zone_name=None):
    """Split an instant into (local calendar date, minute of local day)."""
    local = as_utc(instant).astimezone(resolve_zone(zone_name))
    return local.date(), local.hour * 60 + local.minute


def local_date(instant, zone_name=None):
    return local_date_and_minute(instant, zone_name)[0]
