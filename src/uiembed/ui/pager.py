"""
Press-enter pager for startup diagnostics.

Layout (bottom-anchored)::

    <blank rows>
    <MsgSeparator row>
    Error detected while processing pre-vimrc command line:
    E121: Undefined variable: bogus
    Press ENTER or type command to continue█

When the lines do not fit, the newest ones are kept.
"""

from __future__ import annotations

import re
from typing import Iterable, List, Tuple

from uiembed.core.startup import DiagnosticLine
from uiembed.ui.grid import Row, Segment, wrap_text

PAGER_PROMPT = "Press ENTER or type command to continue"

CONTINUE_KEYS = frozenset({"<cr>", "<enter>", "<nl>", "<space>", "<esc>", "\r", "\n", " "})

_KEY_RE = re.compile(r"<[^<>\s]+>|.", re.DOTALL)


def tokenize_keys(keys: str) -> List[str]:
    """Split input into keys; ``<...>`` notation is one key."""
    return _KEY_RE.findall(keys)


def is_continue_key(key: str) -> bool:
    return key.lower() in CONTINUE_KEYS if key.startswith("<") else key in CONTINUE_KEYS


def split_at_continue(keys: str) -> Tuple[bool, str]:
    """
    Find the first continue key in ``keys``.

    Returns ``(dismissed, rest)`` where ``rest`` is the input after the
    continue key. Keys before it are dropped.
    """
    tokens = tokenize_keys(keys)
    for index, key in enumerate(tokens):
        if is_continue_key(key):
            return True, "".join(tokens[index + 1:])
    return False, ""


class Pager:
    """Diagnostic lines waiting for the user to continue."""

    def __init__(self, lines: Iterable[DiagnosticLine] = ()):
        self.lines: List[DiagnosticLine] = list(lines)

    def append(self, line: DiagnosticLine) -> None:
        self.lines.append(line)

    def rows(self, width: int, height: int) -> List[Row]:
        body: List[Row] = []
        for line in self.lines:
            for part in wrap_text(line.text, width):
                body.append([Segment(part, line.hl_group)])

        prompt: Row = [Segment(PAGER_PROMPT[:width], "MoreMsg")]
        if height <= 1:
            return [prompt][:height]

        room = height - 2
        if len(body) > room:
            body = body[len(body) - room:] if room > 0 else []
        separator: Row = [Segment(" " * width, "MsgSeparator")]
        blanks: List[Row] = [[] for _ in range(height - 2 - len(body))]
        return blanks + [separator] + body + [prompt]

    def cursor(self, width: int, height: int) -> Tuple[int, int]:
        return max(0, height - 1), min(len(PAGER_PROMPT), max(0, width - 1))
