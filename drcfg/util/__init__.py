"""
drcfg Utils
===========

Support classes for references.

Classes:
- WatchRegistry: Copy-on-Write keyed callback storage safe to iterate during updates
"""

from .watch_registry import WatchRegistry

__all__ = [
    "WatchRegistry",
]
