"""
SimPower Utilities Package.
Internal utilities - not part of public API.
"""

from . import data_utils, parsers, validators, visualization

__all__ = [
    "data_utils",
    "parsers",
    "validators",
    "visualization",
]
