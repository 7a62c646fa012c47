"""
Core Application Components

Configuration shared by adapters, the query gateway and the HTTP surface.
"""

from querygate.core.config import Settings, get_settings

__all__ = [
    "Settings",
    "get_settings",
]
