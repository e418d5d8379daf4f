"""
Capability Registry — catalog of every operation a workflow step can call.

Maps ``category.module.function`` paths to descriptors. Lookups try the
exact path first, then the table of deprecated paths. Parameter aliases
live on each descriptor and are applied by ``normalize``, which only
renames a deprecated key when the canonical key is absent.
"""

import copy
from typing import Iterable, Optional

import structlog

from capabilities.base import CapabilityDescriptor
from core.exceptions import ValidationError

logger = structlog.get_logger(__name__)


class CapabilityRegistry:
    """Central registry for all capability implementations."""

    def __init__(self):
        self._capabilities: dict[str, CapabilityDescriptor] = {}
        self._path_aliases: dict[str, str] = {}

    def register(self, descriptor: CapabilityDescriptor) -> None:
        """Register a capability and its deprecated paths."""
        if descriptor.path in self._capabilities:
            raise ValueError(f"Capability already registered: {descriptor.path}")
        if descriptor.path in self._path_aliases:
            raise ValueError(f"'{descriptor.path}' is already an alias")
        self._capabilities[descriptor.path] = descriptor
        for alias in descriptor.path_aliases:
            self.register_alias(alias, descriptor.path)

    def register_many(self, descriptors: Iterable[CapabilityDescriptor]) -> None:
        for descriptor in descriptors:
            self.register(descriptor)

    def register_alias(self, alias: str, canonical: str) -> None:
        """Map a deprecated path to a registered canonical path."""
        if alias in self._capabilities:
            raise ValueError(f"Alias '{alias}' shadows a registered capability")
        existing = self._path_aliases.get(alias)
        if existing and existing != canonical:
            raise ValueError(f"Alias '{alias}' already points to '{existing}'")
        self._path_aliases[alias] = canonical

    def has(self, path: str) -> bool:
        return path in self._capabilities or path in self._path_aliases

    def get(self, path: str) -> Optional[CapabilityDescriptor]:
        """Exact lookup, no alias resolution."""
        return self._capabilities.get(path)

    def canonical_path(self, path: str) -> Optional[str]:
        if path in self._capabilities:
            return path
        target = self._path_aliases.get(path)
        if target in self._capabilities:
            return target
        return None

    def resolve(self, path: str) -> CapabilityDescriptor:
        """Resolve a path (or deprecated alias) to exactly one descriptor.

        Raises:
            ValidationError: if the path is unknown
        """
        canonical = self.canonical_path(path)
        if canonical is None:
            raise ValidationError(
                f"Unknown capability '{path}'",
                issues=[f"unknown capability '{path}'"],
            )
        return self._capabilities[canonical]

    def normalize(self, path: str, inputs: Optional[dict]) -> tuple[str, dict, list[str]]:
        """Rewrite deprecated path and parameter names to canonical ones.

        Rules:
            - a deprecated key is renamed only when the canonical key is absent
            - when both are present the deprecated duplicate is dropped and
              the canonical value is kept untouched
            - an already canonical step comes back unchanged with no changes

        Returns:
            (path, inputs, changes) where ``changes`` describes every rewrite

        Raises:
            ValidationError: if the path is unknown
        """
        descriptor = self.resolve(path)
        changes: list[str] = []
        inputs = copy.deepcopy(inputs or {})

        if descriptor.path != path:
            changes.append(f"capability '{path}' renamed to '{descriptor.path}'")
            path = descriptor.path

        if not descriptor.param_aliases:
            return path, inputs, changes

        target = inputs
        key = descriptor.wrapper_key
        if key and set(inputs) == {key} and isinstance(inputs[key], dict):
            target = inputs[key]

        for alias, canonical in descriptor.param_aliases.items():
            if alias not in target:
                continue
            if canonical in target:
                target.pop(alias)
                changes.append(
                    f"parameter '{alias}' dropped, canonical '{canonical}' already supplied"
                )
            else:
                # Rebuild to keep key order stable for positional display
                renamed = {(canonical if k == alias else k): v for k, v in target.items()}
                target.clear()
                target.update(renamed)
                changes.append(f"parameter '{alias}' renamed to '{canonical}'")

        if changes:
            logger.info("capability_normalized", capability=path, changes=changes)
        return path, inputs, changes

    def normalize_step(self, step):
        """``normalize`` applied to a plain step model.

        Returns:
            (step, changes); the same object when nothing changed
        """
        path, inputs, changes = self.normalize(step.capability, step.inputs)
        if not changes:
            return step, changes
        return step.model_copy(update={"capability": path, "inputs": inputs}), changes

    def build_call(self, descriptor, inputs: dict, context=None) -> tuple[list, dict]:
        """Shape resolved inputs for a descriptor or capability path."""
        if isinstance(descriptor, str):
            descriptor = self.resolve(descriptor)
        return descriptor.build_call(inputs, context)

    def list_all(self) -> list[CapabilityDescriptor]:
        return sorted(self._capabilities.values(), key=lambda d: d.path)

    def catalog(self) -> dict:
        """Capabilities grouped by category and module."""
        tree: dict = {}
        for descriptor in self.list_all():
            modules = tree.setdefault(descriptor.category, {})
            modules.setdefault(descriptor.module, []).append(descriptor.to_dict())
        return tree

    @property
    def path_aliases(self) -> dict[str, str]:
        return dict(self._path_aliases)

    def __len__(self) -> int:
        return len(self._capabilities)


def build_default_registry() -> CapabilityRegistry:
    """Registry loaded with every built-in capability module."""
    from capabilities.builtin import BUILTIN_CAPABILITIES, BUILTIN_PATH_ALIASES

    registry = CapabilityRegistry()
    registry.register_many(BUILTIN_CAPABILITIES)
    for alias, canonical in BUILTIN_PATH_ALIASES.items():
        registry.register_alias(alias, canonical)
    return registry
