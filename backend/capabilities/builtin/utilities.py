"""Data transform capabilities (no external I/O).

Arrays, objects, strings, math, JSON, dates and hashing. These are pure
functions called with positional arguments, so they never go through the
resilience layer.
"""

import hashlib
import json
import random
import re
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from capabilities.base import CapabilityDescriptor, InvocationConvention, optional, param

# ─── Arrays ─────────────────────────────────────────────────────


def _field(item: Any, field: str) -> Any:
    current = item
    for part in field.split("."):
        if isinstance(current, dict):
            current = current.get(part)
        else:
            return None
    return current


def pluck(array: list, field: str) -> list:
    return [_field(item, field) for item in array]


def filter_by(array: list, field: str, value: Any) -> list:
    return [item for item in array if _field(item, field) == value]


def unique(array: list, field: Optional[str] = None) -> list:
    seen = set()
    result = []
    for item in array:
        marker = _field(item, field) if field else item
        marker = json.dumps(marker, sort_keys=True, default=str)
        if marker not in seen:
            seen.add(marker)
            result.append(item)
    return result


def first(array: list, count: int = 1) -> Any:
    if count == 1:
        return array[0] if array else None
    return array[:count]


def length(array: list) -> int:
    return len(array)


def sort_by(array: list, field: str, order: str = "asc") -> list:
    return sorted(
        array,
        key=lambda item: (_field(item, field) is None, _field(item, field)),
        reverse=order == "desc",
    )


def concat(first_array: list, second_array: list) -> list:
    return list(first_array) + list(second_array)


def chunk(array: list, size: int) -> list:
    if size < 1:
        raise ValueError("chunk size must be at least 1")
    return [array[i:i + size] for i in range(0, len(array), size)]


# ─── Objects ────────────────────────────────────────────────────


def get_value(data: dict, path: str, default: Any = None) -> Any:
    value = _field(data, path)
    return default if value is None else value


def keys(data: dict) -> list:
    return list(data.keys())


def merge(target: dict, source: dict) -> dict:
    return {**target, **source}


def pick(data: dict, fields: list) -> dict:
    return {k: data[k] for k in fields if k in data}


# ─── Strings ────────────────────────────────────────────────────


def to_upper(text: str) -> str:
    return str(text).upper()


def to_lower(text: str) -> str:
    return str(text).lower()


def split(text: str, separator: str = ",") -> list:
    return [part.strip() for part in str(text).split(separator)]


def join(items: list, separator: str = ", ") -> str:
    return separator.join(str(i) for i in items)


def truncate(text: str, max_length: int, suffix: str = "...") -> str:
    text = str(text)
    if len(text) <= max_length:
        return text
    return text[: max(0, max_length - len(suffix))] + suffix


def replace(text: str, search: str, replacement: str) -> str:
    return str(text).replace(search, replacement)


def slugify(text: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", str(text).lower())
    return slug.strip("-")


# ─── Math ───────────────────────────────────────────────────────


def add(a: float, b: float) -> float:
    return a + b


def subtract(a: float, b: float) -> float:
    return a - b


def multiply(a: float, b: float) -> float:
    return a * b


def divide(a: float, b: float) -> float:
    if b == 0:
        raise ValueError("division by zero")
    return a / b


def total(numbers: list) -> float:
    return sum(numbers)


def average(numbers: list) -> float:
    if not numbers:
        return 0
    return sum(numbers) / len(numbers)


def round_number(value: float, decimals: int = 0) -> float:
    return round(value, decimals)


def random_int(minimum: int, maximum: int) -> int:
    return random.randint(minimum, maximum)


# ─── JSON / dates / crypto ──────────────────────────────────────


def parse_json(text: str) -> Any:
    return json.loads(text)


def stringify_json(data: Any, pretty: bool = False) -> str:
    return json.dumps(data, indent=2 if pretty else None, default=str)


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def add_days(date: str, days: int) -> str:
    return (datetime.fromisoformat(date) + timedelta(days=days)).isoformat()


def hash_sha256(text: str) -> str:
    return hashlib.sha256(str(text).encode()).hexdigest()


def generate_uuid() -> str:
    return str(uuid.uuid4())


def _positional(path, handler, parameters, description, **extra) -> CapabilityDescriptor:
    return CapabilityDescriptor(
        path=path,
        handler=handler,
        convention=InvocationConvention.POSITIONAL,
        parameters=parameters,
        description=description,
        **extra,
    )


UTILITY_CAPABILITIES = [
    _positional("utilities.array.pluck", pluck, [param("array"), param("field")],
                "Extract one field from every item"),
    _positional("utilities.array.filter", filter_by,
                [param("array"), param("field"), param("value")],
                "Keep items whose field equals value"),
    _positional("utilities.array.unique", unique, [param("array"), optional("field")],
                "Remove duplicates, optionally by field"),
    _positional("utilities.array.first", first, [param("array"), optional("count", 1)],
                "First item, or first N items"),
    _positional("utilities.array.length", length, [param("array")], "Number of items"),
    _positional("utilities.array.sortBy", sort_by,
                [param("array"), param("field"), optional("order", "asc")],
                "Sort items by field"),
    _positional("utilities.array.concat", concat,
                [param("first"), param("second")], "Concatenate two arrays"),
    _positional("utilities.array.chunk", chunk, [param("array"), param("size")],
                "Split into chunks of size"),
    _positional("utilities.object.get", get_value,
                [param("data"), param("path"), optional("default")],
                "Read a dotted path from an object",
                param_aliases={"obj": "data", "object": "data"}),
    _positional("utilities.object.keys", keys, [param("data")], "Object keys",
                param_aliases={"obj": "data"}),
    _positional("utilities.object.merge", merge, [param("target"), param("source")],
                "Shallow merge, source wins"),
    _positional("utilities.object.pick", pick, [param("data"), param("fields")],
                "Subset of an object", param_aliases={"obj": "data", "keys": "fields"}),
    _positional("utilities.string.toUpperCase", to_upper, [param("text")], "Uppercase"),
    _positional("utilities.string.toLowerCase", to_lower, [param("text")], "Lowercase"),
    _positional("utilities.string.split", split, [param("text"), optional("separator", ",")],
                "Split text", param_aliases={"str": "text"}),
    _positional("utilities.string.join", join, [param("items"), optional("separator", ", ")],
                "Join items into text"),
    _positional("utilities.string.truncate", truncate,
                [param("text"), param("maxLength"), optional("suffix", "...")],
                "Limit text length", param_aliases={"length": "maxLength"}),
    _positional("utilities.string.replace", replace,
                [param("text"), param("search"), param("replacement")], "Replace substring"),
    _positional("utilities.string.slugify", slugify, [param("text")], "URL-safe slug"),
    _positional("utilities.math.add", add, [param("a"), param("b")], "a + b"),
    _positional("utilities.math.subtract", subtract, [param("a"), param("b")], "a - b"),
    _positional("utilities.math.multiply", multiply, [param("a"), param("b")], "a * b"),
    _positional("utilities.math.divide", divide, [param("a"), param("b")], "a / b"),
    _positional("utilities.math.sum", total, [param("numbers")], "Sum of numbers"),
    _positional("utilities.math.average", average, [param("numbers")], "Mean of numbers"),
    _positional("utilities.math.round", round_number,
                [param("value"), optional("decimals", 0)], "Round a number"),
    _positional("utilities.math.randomInt", random_int, [param("min"), param("max")],
                "Random integer in [min, max]"),
    _positional("utilities.json.parse", parse_json, [param("text")], "Parse JSON text",
                path_aliases=["utilities.json.parseJson"], param_aliases={"json": "text"}),
    _positional("utilities.json.stringify", stringify_json,
                [param("data"), optional("pretty", False)], "Serialize to JSON",
                path_aliases=["utilities.json.toJson"], param_aliases={"obj": "data"}),
    _positional("utilities.datetime.now", now_iso, [], "Current UTC time (ISO 8601)",
                path_aliases=["utilities.datetime.getCurrentDateTime"]),
    _positional("utilities.datetime.addDays", add_days, [param("date"), param("days")],
                "Shift an ISO date by days"),
    _positional("utilities.crypto.hashSHA256", hash_sha256, [param("text")], "SHA-256 hex digest"),
    _positional("utilities.crypto.generateUUID", generate_uuid, [], "Random UUID v4"),
]
