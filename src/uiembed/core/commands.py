"""Startup command interpreter (``--cmd`` / ``-c`` arguments).

Supported::

    echoerr {expr} ...          "string" or 'string' literals, numbers; reported as an error
    hi[ghlight] Normal guifg={color} guibg={color} guisp={color}
    colo[rscheme] {name}

Anything else is ``E492: Not an editor command``. The first error from a
source is preceded by ``Error detected while processing {source}:``.
"""
from __future__ import annotations

import logging
import re
from typing import List, Optional, Protocol, Sequence

from uiembed.core.editor import COLOR_SCHEMES, parse_color

logger = logging.getLogger(__name__)

SOURCE_PRE_CONFIG = "pre-vimrc command line"
SOURCE_COMMAND_LINE = "command line"

_TOKEN_RE = re.compile(r'"(?:[^"\\]|\\.)*"|\'[^\']*\'|\S+')
_IDENT_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_:#.]*$")
_NUMBER_RE = re.compile(r"^-?\d+$")


class CommandError(Exception):
    """A startup command failed; the message is shown to the user."""


class CommandTarget(Protocol):
    def report_error(self, text: str) -> None: ...

    def set_default_colors(self, fg: Optional[int] = None, bg: Optional[int] = None,
                           sp: Optional[int] = None) -> None: ...

    def set_colorscheme(self, name: str) -> None: ...


def _abbrev(word: str, full: str, min_len: int) -> bool:
    return len(word) >= min_len and full.startswith(word)


def evaluate(expr: str) -> str:
    """Evaluate one expression token to its string value."""
    if len(expr) >= 2 and expr[0] == expr[-1] == '"':
        return re.sub(r"\\(.)", r"\1", expr[1:-1])
    if len(expr) >= 2 and expr[0] == expr[-1] == "'":
        return expr[1:-1]
    if _NUMBER_RE.match(expr):
        return str(int(expr))
    if _IDENT_RE.match(expr):
        raise CommandError(f"E121: Undefined variable: {expr}")
    raise CommandError(f"E15: Invalid expression: \"{expr}\"")


class CommandRunner:
    """Executes startup commands against a :class:`CommandTarget`."""

    def __init__(self, target: CommandTarget):
        self.target = target

    def run(self, commands: Sequence[str], source: str) -> int:
        """Run ``commands`` in order; returns the number that failed."""
        failures = 0
        for command in commands:
            try:
                self.execute(command)
            except CommandError as e:
                if failures == 0:
                    self.target.report_error(f"Error detected while processing {source}:")
                failures += 1
                logger.debug("[Commands] %s: %s", source, e)
                self.target.report_error(str(e))
        return failures

    def execute(self, command: str) -> None:
        text = command.strip().lstrip(":").strip()
        if not text or text.startswith('"'):
            return
        name, _, rest = text.partition(" ")
        rest = rest.strip()

        if _abbrev(name, "echoerr", 5):
            self._echoerr(rest)
        elif _abbrev(name, "highlight", 2):
            self._highlight(rest)
        elif _abbrev(name, "colorscheme", 4):
            self._colorscheme(rest)
        else:
            raise CommandError(f"E492: Not an editor command: {text}")

    def _echoerr(self, args: str) -> None:
        tokens: List[str] = _TOKEN_RE.findall(args)
        if not tokens:
            raise CommandError("E471: Argument required")
        # the message is raised like any other error, so it gets the source header
        raise CommandError(" ".join(evaluate(t) for t in tokens))

    def _highlight(self, args: str) -> None:
        words = args.split()
        if not words:
            return
        group, settings = words[0], words[1:]
        colors = {}
        for setting in settings:
            key, sep, value = setting.partition("=")
            if not sep:
                raise CommandError(f"E416: Missing equal sign: {setting}")
            key = key.lower()
            if key not in ("guifg", "guibg", "guisp"):
                # cterm/gui attribute keys are accepted and not applied
                continue
            if value.upper() == "NONE":
                continue
            color = parse_color(value)
            if color is None:
                raise CommandError(f"E254: Cannot allocate color {value}")
            colors[key[3:]] = color

        if group.lower() == "normal" and colors:
            self.target.set_default_colors(**colors)

    def _colorscheme(self, args: str) -> None:
        name = args.strip()
        if not name:
            return
        if name not in COLOR_SCHEMES:
            raise CommandError(f"E185: Cannot find color scheme '{name}'")
        self.target.set_colorscheme(name)


def run_startup_commands(target: CommandTarget, commands: Sequence[str], source: str) -> int:
    return CommandRunner(target).run(commands, source)
