"""Write admission control."""

from .gate import DEFAULT_THROTTLE_SECONDS, ThrottleGate

__all__ = ["ThrottleGate", "DEFAULT_THROTTLE_SECONDS"]
