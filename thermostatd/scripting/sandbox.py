"""
Capability allow-list for user scripts.

Scripts run in a private Lua environment (see sandbox.lua). The names below are
never resolvable from that environment; ``find_forbidden_globals`` rejects
sources that mention them before any code runs, and the environment's
``__index`` rejects anything that slips past the scan at run time.
"""
from __future__ import annotations

import re
from pathlib import Path

FORBIDDEN_GLOBALS = frozenset({
    "io",
    "os",
    "debug",
    "package",
    "require",
    "dofile",
    "loadfile",
    "load",
    "loadstring",
    "collectgarbage",
    "coroutine",
    "python",
})

TIMEOUT_MARKER = "__thermostatd_timeout__"
UNSAFE_MARKER = "__thermostatd_unsafe__:"

PRELUDE = (Path(__file__).resolve().parent / "sandbox.lua").read_text()

_IDENT = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")
_LONG_OPEN = re.compile(r"\[(=*)\[")


def strip_strings_and_comments(source: str) -> str:
    """Blank out Lua comments and string literals, keeping identifiers in place."""
    out: list[str] = []
    i, n = 0, len(source)
    while i < n:
        ch = source[i]

        if source.startswith("--", i):
            m = _LONG_OPEN.match(source, i + 2)
            if m:
                close = "]" + m.group(1) + "]"
                end = source.find(close, m.end())
                i = n if end < 0 else end + len(close)
            else:
                end = source.find("\n", i)
                i = n if end < 0 else end
            out.append(" ")
            continue

        if ch == "[":
            m = _LONG_OPEN.match(source, i)
            if m:
                close = "]" + m.group(1) + "]"
                end = source.find(close, m.end())
                i = n if end < 0 else end + len(close)
                out.append('""')
                continue

        if ch in "\"'":
            j = i + 1
            while j < n and source[j] != ch and source[j] != "\n":
                if source[j] == "\\":
                    j += 1
                j += 1
            i = j + 1
            out.append('""')
            continue

        out.append(ch)
        i += 1
    return "".join(out)


def _is_field_access(code: str, start: int) -> bool:
    j = start - 1
    while j >= 0 and code[j].isspace():
        j -= 1
    if j < 0:
        return False
    if code[j] == ":":
        return True
    # `x.os` is a field; `"a" .. os` is concatenation
    return code[j] == "." and (j == 0 or code[j - 1] != ".")


def find_forbidden_globals(source: str) -> list[str]:
    code = strip_strings_and_comments(source)
    found: list[str] = []
    for m in _IDENT.finditer(code):
        name = m.group(0)
        if name in FORBIDDEN_GLOBALS and not _is_field_access(code, m.start()):
            if name not in found:
                found.append(name)
    return found
