"""
sudo elevation wrapper.
"""

from __future__ import annotations

from typing import List, Optional

from .base import ElevationWrapper

# sudo expands %p to the user whose password is wanted
SUDO_PROMPT = "[sudo] password for %p: "


class SudoWrapper(ElevationWrapper):
    name = "sudo"
    prompt_patterns = (r"\[sudo\] password for [^\n]*:\s*$",)
    rejection_patterns = (r"Sorry, try again", r"incorrect password attempt")

    def __init__(self, program: str = "sudo", reset_timestamp: bool = True, user: Optional[str] = None, prompt: str = SUDO_PROMPT):
        self.program = program
        # -k forgets cached credentials so the prompt shows up every time
        self.reset_timestamp = reset_timestamp
        self.user = user
        self.prompt = prompt

    def prefix(self) -> List[str]:
        argv = [self.program]
        if self.reset_timestamp:
            argv.append("-k")
        if self.user:
            argv += ["-u", self.user]
        argv += ["-p", self.prompt, "--"]
        return argv
