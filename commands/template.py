"""
/template chat command.

    /template list                      list available templates
    /template info <templateName>       show how to run a template
    /template run <templateName> [input] run a template

Output goes to the environment's notice sink. Failures of a run are
rendered there too; they do not escape the command.
"""
from __future__ import annotations

import structlog

from templates.errors import TemplateError
from templates.executor import TemplateExecutor

logger = structlog.get_logger()

DESCRIPTION = "/template - Run prompt templates"

HELP = """Template Command Usage:
  /template list - List all available templates
  /template run <templateName> [input] - Run a template with the given input
  /template info <templateName> - Show information about a template"""


class TemplateCommand:
    """Routes `/template` subcommands to the executor."""

    def __init__(self, executor: TemplateExecutor):
        self.executor = executor
        self._subcommands = {
            "list": self.list,
            "info": self.info,
            "run": self.run,
        }

    @property
    def env(self):
        return self.executor.env

    async def execute(self, remainder: str = ""):
        remainder = (remainder or "").strip()
        subcommand, _, rest = remainder.partition(" ")
        subcommand = subcommand.lower()

        if not subcommand:
            self.env.notice(HELP)
            return

        handler = self._subcommands.get(subcommand)
        if handler is None:
            self.env.notice(f"Unknown subcommand: {subcommand}")
            self.env.notice(HELP)
            return

        await handler(rest.strip())

    # ── Subcommands ───────────────────────────────────

    async def list(self, _remainder: str = ""):
        names = self.executor.registry.list_names()
        if not names:
            self.env.notice("No templates available.")
            return
        lines = ["Available templates:"] + [f"  - {name}" for name in names]
        self.env.notice("\n".join(lines))

    async def info(self, remainder: str = ""):
        template_name = remainder.strip()
        if not template_name:
            self.env.notice("Please provide a template name.")
            return

        if self.executor.registry.lookup(template_name) is None:
            self.env.notice(f"Template not found: {template_name}")
            return

        self.env.notice("\n".join([
            f"Template: {template_name}",
            "Usage:",
            f"  /template run {template_name} <input>",
        ]))

    async def run(self, remainder: str = ""):
        args = remainder.split()
        if not args:
            self.env.notice("Please provide a template name.")
            return

        template_name = args[0]
        input = " ".join(args[1:])

        try:
            async with self.env.lock:
                result = await self.executor.run_template(template_name, input, env=self.env)
        except TemplateError as e:
            logger.warning("template_command_failed", template=template_name, error=str(e))
            self.env.notice(f"Error running template: {e}")
            return
        except Exception as e:
            logger.error("template_command_error", template=template_name,
                         error=str(e), error_type=type(e).__name__)
            self.env.notice(f"Error running template: {e}")
            return

        self.env.notice(result.final_output or "No output from AI.")
