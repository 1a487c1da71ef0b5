"""Derived metadata: token estimates, file/tool references, tool-call metadata."""

from __future__ import annotations

import math
import re

from memlayer.memory.models import ToolMetadata

_FILE_REF = re.compile(
    r"(?<![\w/.-])((?:[\w.-]+/)*[\w.-]+\.(?:py|ts|tsx|js|jsx|json|md|toml|yaml|yml|rs|go|java|"
    r"c|cc|cpp|h|hpp|rb|sh|sql|css|html|txt|cfg|ini|lock))\b"
)
_TOOL_REF = re.compile(r"\[(Bash|Read|Write|Edit|MultiEdit|Grep|Glob|WebFetch|WebSearch|Task|[A-Z]\w+)\]")
_CODE_HINT = re.compile(r"```|^\s{4,}\S|\bdef \w+\(|\bclass \w+[:(]|\bfunction \w+\(|=>|;\s*$", re.MULTILINE)


def estimate_tokens(text: str, chars_per_token: int = 4) -> int:
    """Rough token estimate: ~4 characters per token."""
    if not text:
        return 0
    return math.ceil(len(text) / max(chars_per_token, 1))


def extract_files(text: str, limit: int = 20) -> tuple[str, ...]:
    """File paths mentioned in text, first occurrence order."""
    seen: dict[str, None] = {}
    for match in _FILE_REF.finditer(text):
        seen.setdefault(match.group(1), None)
        if len(seen) >= limit:
            break
    return tuple(seen)


def extract_tools(text: str) -> tuple[str, ...]:
    seen: dict[str, None] = {}
    for match in _TOOL_REF.finditer(text):
        seen.setdefault(match.group(1), None)
    return tuple(seen)


def has_code(text: str) -> bool:
    return bool(_CODE_HINT.search(text))


def summarize(text: str, limit: int) -> str:
    """Single-line preview capped at ``limit`` chars."""
    flat = " ".join(text.split())
    if len(flat) <= limit:
        return flat
    return flat[: max(limit - 3, 0)] + "..."


def extract_tool_metadata(
    tool_name: str,
    tool_input: dict,
    tool_output: str,
    success: bool,
) -> ToolMetadata:
    """Pick the fields that identify a tool call: target file, command, pattern, URL."""
    file_path = tool_input.get("file_path") or tool_input.get("path") or tool_input.get("notebook_path")
    command = tool_input.get("command")
    pattern = tool_input.get("pattern") or tool_input.get("query")
    url = tool_input.get("url")

    match_count = None
    line_count = None
    exit_code = None
    if tool_name in ("Grep", "Glob") and tool_output:
        match_count = len([line for line in tool_output.splitlines() if line.strip()])
    if tool_name == "Read" and tool_output:
        line_count = tool_output.count("\n") + 1
    if tool_name == "Bash":
        exit_code = 0 if success else 1
        found = re.search(r"exit code[:\s]+(\d+)", tool_output or "", re.IGNORECASE)
        if found:
            exit_code = int(found.group(1))

    return ToolMetadata(
        file_path=str(file_path) if file_path else None,
        command=str(command) if command else None,
        pattern=str(pattern) if pattern else None,
        match_count=match_count,
        url=str(url) if url else None,
        exit_code=exit_code,
        line_count=line_count,
    )
