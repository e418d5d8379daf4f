"""
Capability descriptors.

A capability is one callable operation addressed by a stable
``category.module.function`` path. Its descriptor records how the
interpreter must shape the call:

- ``positional``: each declared parameter is passed as a positional
  argument, in declaration order.
- ``params``: the whole input mapping is passed as one ``params`` dict.
- ``options``: the whole input mapping is passed as one ``options`` dict.

The convention is metadata on the entry and is never guessed from the
inputs at call time.
"""

import inspect
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

from core.exceptions import ValidationError


class InvocationConvention(str, Enum):
    """How step inputs are turned into handler arguments."""

    POSITIONAL = "positional"
    PARAMS = "params"
    OPTIONS = "options"


@dataclass
class ParameterSpec:
    """One named input of a capability."""

    name: str
    required: bool = True
    default: Any = None
    description: str = ""

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "required": self.required,
            "default": self.default,
            "description": self.description,
        }


def param(name: str, required: bool = True, default: Any = None, description: str = "") -> ParameterSpec:
    """Shorthand used by the built-in catalog modules."""
    return ParameterSpec(name=name, required=required, default=default, description=description)


def optional(name: str, default: Any = None, description: str = "") -> ParameterSpec:
    return ParameterSpec(name=name, required=False, default=default, description=description)


@dataclass
class CapabilityDescriptor:
    """Registry entry for one capability.

    Attributes:
        path: Canonical ``category.module.function`` path
        handler: Sync or async callable
        convention: Input-wrapping convention
        parameters: Declared parameters (positional order, or aggregate keys)
        param_aliases: Deprecated parameter name -> canonical name
        path_aliases: Deprecated paths that resolve to this entry
        external: Performs network I/O; wrapped by the resilience layer
        retry: Name of a ``RETRY_PRESETS`` entry for retries inside one call
        needs_context: Handler receives ``context=`` (the ExecutionContext)
        timeout: Per-call timeout override in seconds
        rate_limit: ``(calls, window_seconds)`` override for the token bucket
        description: Human readable summary for the catalog
    """

    path: str
    handler: Callable[..., Any]
    convention: InvocationConvention = InvocationConvention.POSITIONAL
    parameters: list[ParameterSpec] = field(default_factory=list)
    param_aliases: dict[str, str] = field(default_factory=dict)
    path_aliases: list[str] = field(default_factory=list)
    external: bool = False
    retry: Optional[str] = None
    needs_context: bool = False
    timeout: Optional[float] = None
    rate_limit: Optional[tuple[int, float]] = None
    description: str = ""

    def __post_init__(self):
        parts = self.path.split(".")
        if len(parts) != 3 or not all(parts):
            raise ValueError(
                f"Capability path must be category.module.function, got '{self.path}'"
            )
        if parts[0] != parts[0].lower():
            raise ValueError(f"Capability category must be lowercase: '{self.path}'")
        for alias, canonical in self.param_aliases.items():
            if canonical not in self.parameter_names:
                raise ValueError(
                    f"{self.path}: alias '{alias}' points to unknown parameter '{canonical}'"
                )

    @property
    def category(self) -> str:
        return self.path.split(".")[0]

    @property
    def module(self) -> str:
        return self.path.split(".")[1]

    @property
    def function(self) -> str:
        return self.path.split(".")[2]

    @property
    def parameter_names(self) -> list[str]:
        return [p.name for p in self.parameters]

    @property
    def wrapper_key(self) -> Optional[str]:
        """Key a step may use to wrap its inputs (``params``/``options``)."""
        if self.convention == InvocationConvention.POSITIONAL:
            return None
        return self.convention.value

    def unwrap(self, inputs: dict) -> dict:
        """Return the aggregate mapping for params/options conventions.

        A step may either list the keys directly or nest them under a single
        ``params``/``options`` key.
        """
        key = self.wrapper_key
        if key and set(inputs) == {key} and isinstance(inputs[key], dict):
            return inputs[key]
        return inputs

    def check_inputs(self, inputs: dict) -> list[str]:
        """Schema problems for a (possibly still templated) input mapping."""
        problems = []
        values = self.unwrap(inputs)
        for spec in self.parameters:
            if spec.required and spec.name not in values:
                problems.append(f"missing required parameter '{spec.name}'")
        if self.convention == InvocationConvention.POSITIONAL:
            known = set(self.parameter_names)
            for name in values:
                if name not in known:
                    problems.append(f"unknown parameter '{name}'")
        return problems

    def build_call(self, inputs: dict, context: Any = None) -> tuple[list, dict]:
        """Turn resolved step inputs into ``(args, kwargs)`` for the handler.

        Raises:
            ValidationError: on missing or unknown parameters
        """
        problems = self.check_inputs(inputs)
        if problems:
            raise ValidationError(
                f"{self.path}: {'; '.join(problems)}",
                issues=[f"{self.path}: {p}" for p in problems],
            )

        kwargs = {"context": context} if self.needs_context else {}

        if self.convention == InvocationConvention.POSITIONAL:
            args = [inputs.get(spec.name, spec.default) for spec in self.parameters]
            return args, kwargs

        values = dict(self.unwrap(inputs))
        for spec in self.parameters:
            if spec.name not in values and spec.default is not None:
                values[spec.name] = spec.default
        return [values], kwargs

    async def call(self, args: list, kwargs: dict) -> Any:
        result = self.handler(*args, **kwargs)
        if inspect.isawaitable(result):
            result = await result
        return result

    async def invoke(self, inputs: dict, context: Any = None) -> Any:
        """Call the handler with the shape its convention requires."""
        args, kwargs = self.build_call(inputs, context)
        return await self.call(args, kwargs)

    def to_dict(self) -> dict:
        return {
            "path": self.path,
            "function": self.function,
            "convention": self.convention.value,
            "parameters": [p.to_dict() for p in self.parameters],
            "param_aliases": dict(self.param_aliases),
            "path_aliases": list(self.path_aliases),
            "external": self.external,
            "retry": self.retry,
            "description": self.description,
        }
