"""Action selection over tracked environment state."""

from .policy import DecisionPolicy, PolicyVariant, resolve_seed

__all__ = ["DecisionPolicy", "PolicyVariant", "resolve_seed"]
