from __future__ import annotations

import json
import sys
from typing import Any, Iterable, Sequence, TextIO


SPINNER_FRAMES = "|/-\\"


def print_json(obj: Any) -> None:
    print(json.dumps(obj, ensure_ascii=False, indent=2, sort_keys=True))


def format_table(headers: Sequence[str], rows: Iterable[Sequence[str]]) -> str:
    """Left-aligned plain-text table with a dashed rule under the header."""
    table = [list(headers)] + [[str(c) for c in r] for r in rows]
    n_cols = len(headers)
    widths = [max(len(r[i]) if i < len(r) else 0 for r in table) for i in range(n_cols)]

    lines = []
    for idx, r in enumerate(table):
        cells = [r[i].ljust(widths[i]) if i < len(r) else "" for i in range(n_cols)]
        lines.append("  ".join(cells).rstrip())
        if idx == 0:
            lines.append("  ".join("-" * w for w in widths))
    return "\n".join(lines)


class Spinner:
    """Single-line progress indicator redrawn in place with `\\r`."""

    def __init__(self, label: str, *, stream: TextIO | None = None) -> None:
        self.label = label
        self._stream = stream if stream is not None else sys.stderr
        self._frame = 0
        self._drawn = False

    def tick(self) -> None:
        ch = SPINNER_FRAMES[self._frame % len(SPINNER_FRAMES)]
        self._frame += 1
        self._stream.write(f"\r{self.label} {ch}")
        self._stream.flush()
        self._drawn = True

    def clear(self) -> None:
        if not self._drawn:
            return
        self._stream.write("\r" + " " * (len(self.label) + 2) + "\r")
        self._stream.flush()
        self._drawn = False
