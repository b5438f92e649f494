"""
subcommander: run external programs synchronously or under asyncio, with
bounded output capture and pty-mediated password prompts.
"""

from subcommander.core import *  # noqa: F401,F403
from subcommander.core import __all__ as _core_all
from subcommander.wrappers import ElevationWrapper, PrefixWrapper, SudoWrapper, DoasWrapper, get_wrapper

__version__ = "0.3.0"

__all__ = [
    *_core_all,
    "ElevationWrapper",
    "PrefixWrapper",
    "SudoWrapper",
    "DoasWrapper",
    "get_wrapper",
]
