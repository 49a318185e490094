"""Wire-format controllers for the p2p_guard HTTP surface."""

from .controllers import GuardController, parse_order

__all__ = ["GuardController", "parse_order"]
