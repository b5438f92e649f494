"""
doas elevation wrapper (OpenBSD's doas and its Linux port).
"""

from __future__ import annotations

from typing import List, Optional

from .base import ElevationWrapper


class DoasWrapper(ElevationWrapper):
    name = "doas"
    prompt_patterns = (r"doas \([^)]*\) password:\s*$",)
    rejection_patterns = (r"doas: Authentication failed",)

    def __init__(self, program: str = "doas", user: Optional[str] = None):
        self.program = program
        self.user = user

    def prefix(self) -> List[str]:
        argv = [self.program]
        if self.user:
            argv += ["-u", self.user]
        argv.append("--")
        return argv
