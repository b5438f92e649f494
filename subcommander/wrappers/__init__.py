"""
Privilege-elevation wrappers (sudo, doas, generic prefix).

Provides a factory to obtain a wrapper by name.
The pty flow that drives them lives in subcommander.core.privileged.
"""

from .base import ElevationWrapper, PrefixWrapper
from .sudo import SudoWrapper
from .doas import DoasWrapper


def get_wrapper(name: str, **kwargs) -> ElevationWrapper:
    s = name.lower()
    if s == "sudo":
        return SudoWrapper(**kwargs)
    if s == "doas":
        return DoasWrapper(**kwargs)
    if s == "prefix":
        return PrefixWrapper(**kwargs)
    raise ValueError(f"Unsupported wrapper: {name}")


__all__ = [
    "ElevationWrapper",
    "PrefixWrapper",
    "SudoWrapper",
    "DoasWrapper",
    "get_wrapper",
]
