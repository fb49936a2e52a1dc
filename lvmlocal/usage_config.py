"""Usage-reporting constants, size conversion and ping interval."""

from __future__ import annotations

import os
import re
from datetime import timedelta

GA_CLIENT_ID = "UA-127388617-1"

# Event categories
INSTALL_EVENT = "install"
PING = "lvm-ping"
VOLUME_PROVISION = "volume-provision"
VOLUME_DEPROVISION = "volume-deprovision"
APP_NAME = "OpenEBS"

RUNNING_STATUS = "running"
EVENT_LABEL_NODE = "nodes"
EVENT_LABEL_CAPACITY = "capacity"

REPLICA = "replica:"
DEFAULT_REPLICA_COUNT = "replica:1"
DEFAULT_CAS_TYPE = "lvm-localpv"
LOCAL_PV_REPLICA_COUNT = "1"

PING_PERIOD_ENV = "OPENEBS_IO_ANALYTICS_PING_INTERVAL"
DEFAULT_PING_PERIOD = timedelta(hours=24)
MINIMUM_PING_PERIOD = timedelta(hours=1)

KB = 1000
MB = 1000 * KB
GB = 1000 * MB
TB = 1000 * GB
PB = 1000 * TB

_DECIMAL_UNITS = {"k": KB, "m": MB, "g": GB, "t": TB, "p": PB}
_SIZE_RE = re.compile(r"([0-9]+(?:\.[0-9]+)*) ?([kKmMgGtTpP])?[iI]?[bB]?")


def from_human_size(size: str) -> int:
    """Parse a human size such as '10 GB' into bytes, using decimal units."""
    match = _SIZE_RE.fullmatch(size)
    if match is None:
        raise ValueError(f"invalid size: '{size}'")
    try:
        number = float(match.group(1))
    except ValueError:
        raise ValueError(f"invalid size: '{size}'") from None
    prefix = match.group(2)
    if prefix:
        number *= _DECIMAL_UNITS[prefix.lower()]
    return int(number)


def to_giga_units(size: str) -> int:
    """Return the whole number of gigabytes (1 GB = 1000 MB) in a human size."""
    return from_human_size(size) // GB


_NS = 1
_US = 1_000
_MS = 1_000_000
_S = 1_000_000_000
_DURATION_UNITS = {
    "ns": _NS,
    "us": _US,
    "\u00b5s": _US,
    "\u03bcs": _US,
    "ms": _MS,
    "s": _S,
    "m": 60 * _S,
    "h": 3600 * _S,
}
_MAX_NS = (1 << 63) - 1
_DIGITS_RE = re.compile(r"[0-9]*")
_UNIT_RE = re.compile(r"[^0-9.]*")


def _leading_fraction(digits: str) -> tuple[int, float]:
    value, scale, overflow = 0, 1.0, False
    for ch in digits:
        if overflow:
            continue
        if value > _MAX_NS // 10:
            overflow = True
            continue
        value = value * 10 + int(ch)
        scale *= 10
    return value, scale


def _ns_to_timedelta(ns: int) -> timedelta:
    magnitude = timedelta(microseconds=abs(ns) // 1000)
    return -magnitude if ns < 0 else magnitude


def parse_duration(value: str) -> timedelta:
    """Parse a duration such as '1h30m' or '-2.5s'.

    Accepts a signed sequence of decimal numbers, each with an optional
    fraction and a unit among ns, us, µs, ms, s, m and h.
    """
    rest = value
    negative = False
    if rest and rest[0] in "+-":
        negative = rest[0] == "-"
        rest = rest[1:]
    if rest == "0":
        return timedelta(0)
    if not rest:
        raise ValueError(f'invalid duration "{value}"')

    total = 0
    while rest:
        if not (rest[0] == "." or rest[0].isascii() and rest[0].isdigit()):
            raise ValueError(f'invalid duration "{value}"')

        whole = _DIGITS_RE.match(rest).group()
        rest = rest[len(whole):]
        amount = int(whole) if whole else 0
        if amount > _MAX_NS:
            raise ValueError(f'invalid duration "{value}"')

        fraction, scale, has_fraction = 0, 1.0, False
        if rest.startswith("."):
            rest = rest[1:]
            frac_digits = _DIGITS_RE.match(rest).group()
            rest = rest[len(frac_digits):]
            fraction, scale = _leading_fraction(frac_digits)
            has_fraction = bool(frac_digits)
        if not whole and not has_fraction:
            raise ValueError(f'invalid duration "{value}"')

        unit_name = _UNIT_RE.match(rest).group()
        rest = rest[len(unit_name):]
        if not unit_name:
            raise ValueError(f'missing unit in duration "{value}"')
        unit = _DURATION_UNITS.get(unit_name)
        if unit is None:
            raise ValueError(f'unknown unit "{unit_name}" in duration "{value}"')

        if amount > _MAX_NS // unit:
            raise ValueError(f'invalid duration "{value}"')
        amount *= unit
        if fraction > 0:
            amount += int(fraction * (unit / scale))
        if amount > _MAX_NS:
            raise ValueError(f'invalid duration "{value}"')
        total += amount
        if total > _MAX_NS:
            raise ValueError(f'invalid duration "{value}"')

    return _ns_to_timedelta(-total if negative else total)


def get_ping_period() -> timedelta:
    """Return the ping interval from the environment, falling back to 24 hours.

    Values that do not parse, or that are below one hour, give the default.
    """
    raw = os.environ.get(PING_PERIOD_ENV)
    if raw is None:
        return DEFAULT_PING_PERIOD
    try:
        period = parse_duration(raw)
    except ValueError:
        period = timedelta(0)
    if period < MINIMUM_PING_PERIOD:
        return DEFAULT_PING_PERIOD
    return period