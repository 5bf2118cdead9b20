"""Local membership mirror and group snapshots."""

from .group import Group
from .mirror import MembershipMirror

__all__ = ["Group", "MembershipMirror"]
