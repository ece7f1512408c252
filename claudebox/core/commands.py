"""
Whitelisted one-shot commands.

A fixed set of safe inputs that can be typed into a user's active session
from the REST API, with the terminal's response collected until it goes
quiet.
"""

import asyncio
import logging
from dataclasses import dataclass

from claudebox.core.terminal import PtyExit, PtyProcess

logger = logging.getLogger(__name__)

# command id -> text typed into the assistant's terminal
COMMANDS: dict[str, str] = {
    "help": "/help",
    "list_files": "!ls -la",
    "git_status": "!git status",
    "show_model": "/model",
    "current_dir": "!pwd",
    "test": "!echo test",
}


@dataclass
class CommandResult:
    command: str
    output: str
    timed_out: bool = False

    def to_dict(self) -> dict:
        result = {"output": self.output, "command": self.command}
        if self.timed_out:
            result["timeout"] = True
        return result


async def collect_output(
    pty: PtyProcess,
    text: str,
    silence_timeout: float = 0.5,
    timeout: float = 5.0,
) -> tuple[str, bool]:
    """Type `text` into the terminal and gather what it prints.

    Stops after `silence_timeout` seconds without output, when the process
    exits, or at the hard `timeout`. Returns (output, timed_out).
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    chunks: list[str] = []
    timed_out = False

    queue = pty.subscribe()
    try:
        pty.write(text + "\r")
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                timed_out = True
                break
            try:
                event = await asyncio.wait_for(
                    queue.get(), timeout=min(silence_timeout, remaining)
                )
            except asyncio.TimeoutError:
                timed_out = loop.time() >= deadline
                break
            if isinstance(event, PtyExit):
                break
            chunks.append(event.data)
    finally:
        pty.unsubscribe(queue)

    return "".join(chunks), timed_out
