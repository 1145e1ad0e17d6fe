"""Template rendering for prompts, provider fields and user variables.

Placeholders use ``{{NAME}}`` syntax. Each placeholder is resolved on its
own: a bare name is looked up in the context (names may contain dashes or
dots), anything else is evaluated as a Jinja2 expression, which is how the
helpers are called (``{{ randomInt(lower=1, upper=6) }}``). A placeholder
that cannot be resolved is left in the output literally, so configuration
values that are resolved later, or never, pass through untouched.
"""

from __future__ import annotations

import logging
import os
import random
import re
import string
import tempfile
import uuid
from collections.abc import Mapping
from datetime import datetime, timedelta, timezone
from pathlib import Path
from types import MappingProxyType
from typing import Any, Callable, Dict, Iterator, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from faker import Faker
from jinja2 import ChainableUndefined, Environment, TemplateError

logger = logging.getLogger(__name__)

_ALPHANUMERIC = string.ascii_letters + string.digits
_CHARSETS = {
    "ALPHANUMERIC": _ALPHANUMERIC,
    "ALPHABETIC": string.ascii_letters,
    "NUMERIC": string.digits,
    "HEXADECIMAL": "0123456789abcdef",
    "ALPHANUMERIC_AND_SYMBOLS": _ALPHANUMERIC + "!@#$%^&*()_+-=[]{}|;:,.<>?",
}

_UTC = timezone.utc
_PLACEHOLDER = re.compile(r"\{\{(.+?)\}\}", re.DOTALL)
_BARE_NAME = re.compile(r"[^\s{}()\[\]'\"|,]+")
_OFFSET = re.compile(r"^\s*([+-]?\d+)\s+([a-zA-Z]+?)s?\s*$")
_OFFSET_UNITS = {
    "second": timedelta(seconds=1),
    "minute": timedelta(minutes=1),
    "hour": timedelta(hours=1),
    "day": timedelta(days=1),
    "week": timedelta(weeks=1),
    "month": timedelta(days=30),
    "year": timedelta(days=365),
}
_DATE_TOKEN = re.compile(r"yyyy|yy|MMMM|MMM|MM|M|dd|d|HH|H|hh|h|mm|m|ss|s|SSS|SS|S|a|z|Z|EEEE|EEE")


class _LiteralUndefined(ChainableUndefined):
    """Render an unknown name back as its own placeholder."""

    def __str__(self) -> str:
        return "{{" + str(self._undefined_name) + "}}"


def _ordered(lower: Any, upper: Any, cast: Callable[[Any], Any]) -> tuple:
    lower, upper = cast(lower), cast(upper)
    return (upper, lower) if lower > upper else (lower, upper)


def random_value(type: str = "ALPHANUMERIC", length: int = 10, uppercase: bool = False) -> str:
    kind = str(type).upper()
    if kind == "UUID":
        return str(uuid.uuid4())
    charset = _CHARSETS.get(kind, _ALPHANUMERIC)
    value = "".join(random.choice(charset) for _ in range(max(int(length), 0)))
    return value.upper() if uppercase else value


def random_int(lower: int = 0, upper: int = 100) -> int:
    lower, upper = _ordered(lower, upper, int)
    return random.randint(lower, upper)


def random_decimal(lower: float = 0.0, upper: float = 100.0) -> str:
    lower, upper = _ordered(lower, upper, float)
    return f"{random.uniform(lower, upper):.2f}"


def parse_offset(offset: str) -> Optional[timedelta]:
    """Parse offsets such as ``"3 days"`` or ``"-24 seconds"``."""
    match = _OFFSET.match(offset or "")
    if not match:
        return None
    unit = _OFFSET_UNITS.get(match.group(2).lower())
    if unit is None:
        return None
    return unit * int(match.group(1))


def _date_field(moment: datetime, token: str) -> str:
    if token == "yyyy":
        return f"{moment.year:04d}"
    if token == "yy":
        return f"{moment.year % 100:02d}"
    if token in ("MMMM", "MMM", "EEEE", "EEE"):
        return moment.strftime({"MMMM": "%B", "MMM": "%b", "EEEE": "%A", "EEE": "%a"}[token])
    if token in ("MM", "M"):
        return f"{moment.month:02d}" if token == "MM" else str(moment.month)
    if token in ("dd", "d"):
        return f"{moment.day:02d}" if token == "dd" else str(moment.day)
    if token in ("HH", "H"):
        return f"{moment.hour:02d}"
    if token in ("hh", "h"):
        hour = moment.hour % 12 or 12
        return f"{hour:02d}" if token == "hh" else str(hour)
    if token in ("mm", "m"):
        return f"{moment.minute:02d}" if token == "mm" else str(moment.minute)
    if token in ("ss", "s"):
        return f"{moment.second:02d}" if token == "ss" else str(moment.second)
    if token.startswith("S"):
        return f"{moment.microsecond // 1000:03d}"[: len(token)]
    if token == "a":
        return "AM" if moment.hour < 12 else "PM"
    if token == "z":
        return moment.tzname() or "UTC"
    return moment.strftime("%z")


def now(format: str = "", offset: str = "", timezone: str = "") -> str:
    """Current time, UTC unless *timezone* names an IANA zone.

    *format* is ``"epoch"`` (milliseconds), ``"unix"`` (seconds), a
    date pattern such as ``"yyyy-MM-dd HH:mm"``, a ``strftime`` string, or
    empty for RFC 3339.
    """
    moment = datetime.now(_UTC)
    delta = parse_offset(offset) if offset else None
    if delta is not None:
        moment += delta
    if timezone:
        try:
            moment = moment.astimezone(ZoneInfo(timezone))
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning("Unknown timezone %r, using UTC", timezone)
    if format == "epoch":
        return str(int(moment.timestamp() * 1000))
    if format == "unix":
        return str(int(moment.timestamp()))
    if not format:
        return moment.isoformat(timespec="seconds").replace("+00:00", "Z")
    if "%" in format:
        return moment.strftime(format)
    return _DATE_TOKEN.sub(lambda m: _date_field(moment, m.group(0)), format)



_FAKES: Dict[str, Callable[[Faker], Any]] = {
    "Name.first_name": lambda f: f.first_name(),
    "Name.last_name": lambda f: f.last_name(),
    "Name.full_name": lambda f: f.name(),
    "Name.prefix": lambda f: f.prefix(),
    "Name.suffix": lambda f: f.suffix(),
    "Address.street": lambda f: f.street_address(),
    "Address.street_name": lambda f: f.street_name(),
    "Address.street_number": lambda f: f.building_number(),
    "Address.city": lambda f: f.city(),
    "Address.state": lambda f: f.state(),
    "Address.state_abbrev": lambda f: f.state_abbr(),
    "Address.country": lambda f: f.country(),
    "Address.country_code": lambda f: f.country_code(),
    "Address.postcode": lambda f: f.postcode(),
    "Phone.number": lambda f: f.msisdn(),
    "Phone.number_formatted": lambda f: f.phone_number(),
    "Internet.email": lambda f: f.email(),
    "Internet.username": lambda f: f.user_name(),
    "Internet.url": lambda f: f.url(),
    "Internet.ipv4": lambda f: f.ipv4(),
    "Internet.ipv6": lambda f: f.ipv6(),
    "Internet.mac": lambda f: f.mac_address(),
    "Company.name": lambda f: f.company(),
    "Company.suffix": lambda f: f.company_suffix(),
    "Company.profession": lambda f: f.job(),
    "Lorem.word": lambda f: f.word(),
    "Lorem.sentence": lambda f: f.sentence(nb_words=5),
    "Lorem.paragraph": lambda f: f.paragraph(nb_sentences=3),
    "Finance.credit_card": lambda f: f.credit_card_number(),
    "Finance.currency": lambda f: f.currency_code(),
    "Misc.uuid": lambda f: f.uuid4(),
    "Misc.boolean": lambda f: "true" if f.boolean() else "false",
    "Misc.date": lambda f: f.date(),
    "Misc.time": lambda f: f.time(),
    "Misc.timestamp": lambda f: str(f.unix_time()).split(".")[0],
    "Misc.digit": lambda f: str(f.random_digit()),
}

_faker: Optional[Faker] = None


def fake(key: str) -> str:
    """Fake data by ``Category.field`` key, e.g. ``Internet.email``; unknown keys give ``""``."""
    global _faker
    generator = _FAKES.get(str(key))
    if generator is None:
        return ""
    if _faker is None:
        _faker = Faker()
    return str(generator(_faker))


def cut(value: Any, remove: Any) -> str:
    content = "" if value is None else str(value)
    removal = "" if remove is None else str(remove)
    return content.replace(removal, "") if removal else content


def replace(value: Any, old: Any, new: Any = "") -> str:
    content = "" if value is None else str(value)
    old = "" if old is None else str(old)
    return content.replace(old, "" if new is None else str(new)) if old else content


def substring(value: Any, start: int = 0, end: Optional[int] = None) -> str:
    """Slice with indices clamped to the string; never raises on bad bounds."""
    content = "" if value is None else str(value)
    start = min(max(int(start), 0), len(content))
    stop = len(content) if end is None else min(max(int(end), start), len(content))
    return content[start:stop]


_HELPERS: Dict[str, Callable[..., Any]] = {
    "randomValue": random_value,
    "randomInt": random_int,
    "randomDecimal": random_decimal,
    "now": now,
    "faker": fake,
    "cut": cut,
    "replace": replace,
    "substring": substring,
}
# Helpers that render their default value when written as a bare name.
_BARE_HELPERS = ("randomValue", "randomInt", "randomDecimal", "now")

_ENV = Environment(undefined=_LiteralUndefined, autoescape=False)
_ENV.globals.update(_HELPERS)


class TemplateContext(Mapping):
    """Immutable variable mapping passed into every rendering call."""

    def __init__(self, values: Optional[Mapping[str, Any]] = None) -> None:
        self._values = MappingProxyType(dict(values or {}))

    def __getitem__(self, key: str) -> Any:
        return self._values[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        return f"TemplateContext({len(self._values)} values)"

    def extend(self, values: Mapping[str, Any]) -> "TemplateContext":
        """Return a new context with *values* layered on top."""
        if not values:
            return self
        merged = dict(self._values)
        merged.update(values)
        return TemplateContext(merged)

    def with_variables(self, variables: Mapping[str, str]) -> "TemplateContext":
        """Expand user variables in declaration order and add them.

        Each value is rendered once against the context accumulated so far,
        so a variable may reference environment values and the variables
        declared before it. References to later or cyclic names stay
        literal.
        """
        merged = dict(self._values)
        for name, raw in variables.items():
            merged[name] = render(str(raw), merged)
        return TemplateContext(merged)


def _resolve(match: re.Match, values: Dict[str, Any]) -> str:
    expr = match.group(1).strip()
    if _BARE_NAME.fullmatch(expr):
        if expr in values:
            return str(values[expr])
        if expr in _BARE_HELPERS:
            return str(_HELPERS[expr]())
        return match.group(0)
    try:
        return _ENV.from_string("{{ " + expr + " }}").render(values)
    except (TemplateError, TypeError, ValueError) as e:
        logger.warning("Could not render placeholder %s, leaving it as is: %s", match.group(0), e)
        return match.group(0)


def render(text: str, context: Mapping[str, Any]) -> str:
    """Render every placeholder in *text* against *context* in a single pass."""
    if not text or "{{" not in text:
        return text
    values = dict(context)
    return _PLACEHOLDER.sub(lambda m: _resolve(m, values), text)


def render_params(params: Mapping[str, Any], context: Mapping[str, Any]) -> Dict[str, Any]:
    """Render string values of a parameter mapping."""
    return {
        key: render(value, context) if isinstance(value, str) else value
        for key, value in params.items()
    }


def create_static_context(
    source_file: str = "",
    variables: Optional[Mapping[str, str]] = None,
    run_id: Optional[str] = None,
) -> TemplateContext:
    """Build the run-scope context: environment, run values, then user variables."""
    values: Dict[str, Any] = dict(os.environ)
    values["RUN_ID"] = run_id or str(uuid.uuid4())
    values["TEMP_DIR"] = tempfile.gettempdir()
    if source_file:
        values["TEST_DIR"] = str(Path(source_file).resolve().parent)
    return TemplateContext(values).with_variables(variables or {})


def merge_variables(primary: Mapping[str, str], secondary: Mapping[str, str]) -> Dict[str, str]:
    """Merge two variable maps; keys in *primary* win."""
    merged = dict(secondary)
    merged.update(primary)
    return merged
