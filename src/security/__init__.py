"""Security primitives for Agent Foundry."""

from src.security.policy import SecurityPolicy

__all__ = ["SecurityPolicy"]
