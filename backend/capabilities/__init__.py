"""Capability catalog: descriptors, registry and built-in capabilities."""

from capabilities.base import CapabilityDescriptor, InvocationConvention, ParameterSpec
from capabilities.registry import CapabilityRegistry, build_default_registry

__all__ = [
    "CapabilityDescriptor",
    "CapabilityRegistry",
    "InvocationConvention",
    "ParameterSpec",
    "build_default_registry",
]
