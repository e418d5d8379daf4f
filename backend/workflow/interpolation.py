"""
Template interpolation for step inputs.

A template is a string containing ``{{ path }}`` tokens. A path starts at
a root name and walks through object keys and array indices:

    {{ tweets }}                 whole output
    {{ tweets[0].text }}         index then key
    {{ trigger.body["x-id"] }}   quoted key
    {{ credential.openai }}      resolved secret
    {{ results.length }}         size of a list or string

Templates are parsed once into literal and reference parts. A string that
is exactly one token evaluates to the referenced value with its type
intact (``{{a.b}}`` with ``a = {"b": 5}`` is the number 5). Anything else
renders every token to text and concatenates.

Resolution never falls back to an empty string: an unknown root or a
missing key raises ``UnresolvedReferenceError``.
"""

import json
import re
from dataclasses import dataclass
from typing import Any, Iterator, Optional, Union

from core.exceptions import UnresolvedReferenceError, ValidationError

TOKEN_RE = re.compile(r"\{\{(.*?)\}\}", re.DOTALL)
ROOT_RE = re.compile(r"[A-Za-z_$][A-Za-z0-9_$]*")
KEY_RE = re.compile(r"[A-Za-z0-9_$-]+")
INDEX_RE = re.compile(r"\[\s*(-?\d+)\s*\]")
QUOTED_RE = re.compile(r"""\[\s*(['"])(.*?)\1\s*\]""")

Segment = Union[str, int]


@dataclass(frozen=True)
class Reference:
    """A parsed ``{{ root.seg[0] }}`` token."""

    root: str
    segments: tuple[Segment, ...]
    expression: str


@dataclass(frozen=True)
class Literal:
    text: str


@dataclass(frozen=True)
class Template:
    source: str
    parts: tuple[Union[Literal, Reference], ...]

    @property
    def references(self) -> list[Reference]:
        return [p for p in self.parts if isinstance(p, Reference)]

    @property
    def whole_reference(self) -> Optional[Reference]:
        """The single reference when the template is nothing but one token."""
        stripped = [p for p in self.parts if not (isinstance(p, Literal) and not p.text.strip())]
        if len(stripped) == 1 and isinstance(stripped[0], Reference):
            return stripped[0]
        return None

    @property
    def is_static(self) -> bool:
        return not self.references


def parse_expression(expression: str) -> Reference:
    """Parse the inside of one ``{{ }}`` token.

    Raises:
        ValidationError: on malformed paths
    """
    text = expression.strip()
    match = ROOT_RE.match(text)
    if not match:
        raise ValidationError(
            f"Invalid reference '{{{{{expression}}}}}'",
            issues=[f"invalid reference '{{{{{expression}}}}}'"],
        )
    root = match.group(0)
    pos = match.end()
    segments: list[Segment] = []

    while pos < len(text):
        char = text[pos]
        if char == ".":
            key = KEY_RE.match(text, pos + 1)
            if not key:
                break
            value = key.group(0)
            segments.append(int(value) if value.isdigit() else value)
            pos = key.end()
        elif char == "[":
            index = INDEX_RE.match(text, pos)
            quoted = QUOTED_RE.match(text, pos)
            if index:
                segments.append(int(index.group(1)))
                pos = index.end()
            elif quoted:
                segments.append(quoted.group(2))
                pos = quoted.end()
            else:
                break
        else:
            break

    if pos != len(text):
        raise ValidationError(
            f"Invalid reference '{{{{{expression}}}}}' near '{text[pos:]}'",
            issues=[f"invalid reference '{{{{{expression}}}}}'"],
        )
    return Reference(root=root, segments=tuple(segments), expression=text)


def parse_template(source: str) -> Template:
    parts: list[Union[Literal, Reference]] = []
    pos = 0
    for match in TOKEN_RE.finditer(source):
        if match.start() > pos:
            parts.append(Literal(source[pos:match.start()]))
        parts.append(parse_expression(match.group(1)))
        pos = match.end()
    if pos < len(source):
        parts.append(Literal(source[pos:]))
    return Template(source=source, parts=tuple(parts))


# ─── Binding environment ──────────────────────────────────────


class BindingEnvironment:
    """Name -> value scopes. Child scopes see their parents' bindings."""

    def __init__(self, values: Optional[dict[str, Any]] = None, parent: Optional["BindingEnvironment"] = None):
        self._values: dict[str, Any] = dict(values or {})
        self._parent = parent

    def bind(self, name: str, value: Any) -> None:
        self._values[name] = value

    def has(self, name: str) -> bool:
        if name in self._values:
            return True
        return self._parent.has(name) if self._parent else False

    def lookup(self, name: str) -> Any:
        if name in self._values:
            return self._values[name]
        if self._parent is not None:
            return self._parent.lookup(name)
        raise KeyError(name)

    def child(self, **values: Any) -> "BindingEnvironment":
        return BindingEnvironment(values, parent=self)

    def names(self) -> set[str]:
        inherited = self._parent.names() if self._parent else set()
        return inherited | set(self._values)

    def to_dict(self) -> dict[str, Any]:
        merged = self._parent.to_dict() if self._parent else {}
        merged.update(self._values)
        return merged


def _step(current: Any, segment: Segment, ref: Reference) -> Any:
    if isinstance(current, dict):
        if segment in current:
            return current[segment]
        if isinstance(segment, int) and str(segment) in current:
            return current[str(segment)]
        raise UnresolvedReferenceError(ref.expression, f"key '{segment}' not found")

    if isinstance(current, (list, tuple, str)):
        if segment == "length":
            return len(current)
        if isinstance(segment, int):
            try:
                return current[segment]
            except IndexError:
                raise UnresolvedReferenceError(
                    ref.expression, f"index {segment} out of range (length {len(current)})"
                ) from None
        raise UnresolvedReferenceError(ref.expression, f"cannot read '{segment}' of a list")

    kind = "null" if current is None else type(current).__name__
    raise UnresolvedReferenceError(ref.expression, f"cannot read '{segment}' of {kind}")


def resolve_reference(ref: Reference, env: BindingEnvironment) -> Any:
    try:
        current = env.lookup(ref.root)
    except KeyError:
        raise UnresolvedReferenceError(ref.expression, f"'{ref.root}' is not defined") from None
    for segment in ref.segments:
        current = _step(current, segment, ref)
    return current


def to_text(value: Any) -> str:
    """Text form of a value substituted into a larger string."""
    if isinstance(value, str):
        return value
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, ensure_ascii=False, default=str)
    return str(value)


def render(template: Template, env: BindingEnvironment) -> Any:
    whole = template.whole_reference
    if whole is not None:
        return resolve_reference(whole, env)
    if template.is_static:
        return template.source
    return "".join(
        part.text if isinstance(part, Literal) else to_text(resolve_reference(part, env))
        for part in template.parts
    )


def interpolate(value: Any, env: BindingEnvironment) -> Any:
    """Resolve every template inside ``value`` (recursing through dicts and lists)."""
    if isinstance(value, str):
        if "{{" not in value:
            return value
        return render(parse_template(value), env)
    if isinstance(value, dict):
        return {key: interpolate(item, env) for key, item in value.items()}
    if isinstance(value, list):
        return [interpolate(item, env) for item in value]
    return value


def find_references(value: Any) -> Iterator[Reference]:
    """Every reference inside ``value``, in document order."""
    if isinstance(value, str):
        if "{{" in value:
            yield from parse_template(value).references
    elif isinstance(value, dict):
        for item in value.values():
            yield from find_references(item)
    elif isinstance(value, list):
        for item in value:
            yield from find_references(item)
