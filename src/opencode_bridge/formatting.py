"""Telegram formatting for OpenCode session parts.

Parts are the JSON objects returned by the session message API. Output is
legacy Telegram Markdown; an empty string means the part is not shown.
"""

import re
from typing import Any

_MARKDOWN_SPECIAL = re.compile(r"([*_`\[\]])")
_URL_SCHEME = re.compile(r"^https?://")

# Tools whose summary is intentionally empty
_SILENT_TOOLS = {"bash", "todoread", "todowrite"}

# Parts that never produce output
_HIDDEN_PART_TYPES = {"step-start", "step-finish", "patch"}

BASH_INLINE_MAX = 50


def escape_markdown(text: str) -> str:
    """Escape Telegram Markdown special characters."""
    return _MARKDOWN_SPECIAL.sub(r"\\\1", text)


def _file_name(path: str) -> str:
    return path.split("/")[-1] if path else ""


def _line_count(text: str) -> int:
    return len(text.split("\n"))


def _tool_input(part: dict[str, Any]) -> dict[str, Any]:
    return (part.get("state") or {}).get("input") or {}


def tool_summary(part: dict[str, Any]) -> str:
    """Short description of what a tool call touched (file, pattern, URL)."""
    if part.get("type") != "tool":
        return ""

    tool = part.get("tool")
    tool_input = _tool_input(part)

    if tool == "edit":
        file_name = _file_name(tool_input.get("filePath") or "")
        added = _line_count(tool_input.get("newString") or "")
        removed = _line_count(tool_input.get("oldString") or "")
        counts = f"(+{added}-{removed})"
        return f"*{escape_markdown(file_name)}* {counts}" if file_name else counts

    if tool == "write":
        file_name = _file_name(tool_input.get("filePath") or "")
        lines = _line_count(tool_input.get("content") or "")
        counts = f"({lines} line{'' if lines == 1 else 's'})"
        return f"*{escape_markdown(file_name)}* {counts}" if file_name else counts

    if tool == "webfetch":
        url = _URL_SCHEME.sub("", tool_input.get("url") or "")
        return f"*{escape_markdown(url)}*" if url else ""

    if tool == "read":
        file_name = _file_name(tool_input.get("filePath") or "")
        return f"*{escape_markdown(file_name)}*" if file_name else ""

    if tool in ("glob", "grep"):
        pattern = tool_input.get("pattern") or ""
        return f"*{escape_markdown(pattern)}*" if pattern else ""

    if tool in _SILENT_TOOLS:
        return ""

    if tool == "task":
        description = tool_input.get("description") or ""
        return f"_{escape_markdown(description)}_" if description else ""

    return ""


def format_todo_list(part: dict[str, Any]) -> str:
    """Show the todo item currently in progress, numbered from 1."""
    if part.get("type") != "tool" or part.get("tool") != "todowrite":
        return ""

    todos = _tool_input(part).get("todos") or []
    for index, todo in enumerate(todos):
        if todo.get("status") == "in_progress":
            content = todo.get("content") or ""
            content = content[:1].lower() + content[1:]
            return f"{index + 1}. *{escape_markdown(content)}*"
    return ""


def _tool_title(part: dict[str, Any]) -> str:
    state = part.get("state") or {}
    state_title = state.get("title")

    if state.get("status") == "error":
        return state.get("error") or "error"

    if part.get("tool") == "bash":
        tool_input = state.get("input") or {}
        command = tool_input.get("command") or ""
        description = tool_input.get("description") or ""
        if "\n" not in command and len(command) <= BASH_INLINE_MAX:
            return f"_{escape_markdown(command)}_"
        if description:
            return f"_{escape_markdown(description)}_"
        if state_title:
            return f"_{escape_markdown(state_title)}_"
        return ""

    if state_title:
        return f"_{escape_markdown(state_title)}_"
    return ""


def format_part(part: dict[str, Any]) -> str:
    """Format a single session part for Telegram."""
    part_type = part.get("type")

    if part_type == "text":
        text = part.get("text") or ""
        return text if text.strip() else ""

    if part_type == "reasoning":
        return "> thinking" if (part.get("text") or "").strip() else ""

    if part_type == "file":
        return f"[file] {part.get('filename') or 'File'}"

    if part_type in _HIDDEN_PART_TYPES:
        return ""

    if part_type == "agent":
        return f"> agent {part.get('id')}"

    if part_type == "tool":
        tool = part.get("tool")
        if tool == "todowrite":
            return format_todo_list(part)

        # Questions are answered with buttons, not text
        if tool == "question":
            return ""

        state = part.get("state") or {}
        if state.get("status") == "pending":
            return ""

        icon = "X" if state.get("status") == "error" else ">"
        return f"{icon} {tool} {_tool_title(part)} {tool_summary(part)}".strip()

    return ""
