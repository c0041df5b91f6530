"""
Chat command router.

Chat input starting with "/" is a command: "/template run summarize hi"
goes to the `template` command with remainder "run summarize hi".
Anything else is not a command and is left to the caller.
"""
from __future__ import annotations

import structlog

from commands.template import DESCRIPTION, TemplateCommand
from templates.executor import TemplateExecutor

logger = structlog.get_logger()


class CommandRouter:
    """Maps command names to handlers with an async `execute(remainder)`."""

    def __init__(self, executor: TemplateExecutor):
        self.executor = executor
        self._commands = {"template": TemplateCommand(executor)}
        self._descriptions = {"template": DESCRIPTION}

    @property
    def env(self):
        return self.executor.env

    def commands(self) -> dict[str, str]:
        return dict(self._descriptions)

    async def handle(self, text: str) -> bool:
        """Run `text` if it is a command. Returns False when it is not one."""
        text = (text or "").strip()
        if not text.startswith("/"):
            return False

        name, _, remainder = text[1:].partition(" ")
        command = self._commands.get(name.lower())
        if command is None:
            logger.info("chat_command_unknown", command=name)
            self.env.notice(f"Unknown command: /{name}")
            return True

        logger.info("chat_command", command=name)
        await command.execute(remainder)
        return True
