"""File editing toolkit."""

import asyncio
import json
import re
from pathlib import Path
from typing import Any

from deckhand.exceptions import ActionExecutionError
from deckhand.logging import get_logger

log = get_logger(__name__)

_PATH_PARAM = {"name": "path", "type": "str", "description": "Path of one file"}


def _as_text(content: Any) -> str:
    # Values the markup parser decoded from JSON go back out as JSON.
    return content if isinstance(content, str) else json.dumps(content, ensure_ascii=False, default=str)


def _read_text(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8")
    except UnicodeDecodeError:
        return path.read_text(encoding="latin-1")


class FileEditor:
    """Read, search and edit single files.

    Blocking file I/O runs in a worker thread so the event loop keeps serving
    other actions. Errors are raised as ``ActionExecutionError`` and come back
    to the model as failed observations.
    """

    ACTIONS: dict[str, dict[str, Any]] = {
        "read": {
            "description": "Read the content of one file. Read one file at a time.",
            "params": [
                _PATH_PARAM,
                {
                    "name": "line_range",
                    "type": "str",
                    "description": "Line range, 'start-end' or 'start'. 'all' reads the whole file.",
                    "optional": True,
                },
            ],
            "returns": "The content of the file",
        },
        "write": {
            "description": "Write content to a file, creating parent directories as needed.",
            "params": [
                _PATH_PARAM,
                {"name": "content", "type": "str", "description": "Content to write"},
            ],
            "returns": "Description of the operation result",
        },
        "find": {
            "description": "Find lines matching a regex pattern in one file. Folders are not searched.",
            "params": [
                _PATH_PARAM,
                {"name": "pattern", "type": "str", "description": "Regex pattern to search for"},
            ],
            "returns": "Description of the search results",
        },
        "find_and_replace": {
            "description": "Replace every match of a regex pattern in one file.",
            "params": [
                _PATH_PARAM,
                {"name": "pattern", "type": "str", "description": "Regex pattern to search for"},
                {"name": "replacement", "type": "str", "description": "Replacement text"},
            ],
            "returns": "Description of the operation result",
        },
        "insert": {
            "description": "Insert content at a line of a file.",
            "params": [
                _PATH_PARAM,
                {"name": "content", "type": "str", "description": "Content to insert"},
                {
                    "name": "line",
                    "type": "int",
                    "description": "1-based line number to insert at; appends to the end when omitted",
                    "optional": True,
                },
            ],
            "returns": "Description of the operation result",
        },
    }

    @staticmethod
    def _existing_file(path: str, action: str) -> Path:
        file_path = Path(str(path)).expanduser()
        if not file_path.is_file():
            raise ActionExecutionError(f"FileEditor.{action}", f"File does not exist: {path}")
        return file_path

    @staticmethod
    def _compile(pattern: str, action: str) -> re.Pattern[str]:
        try:
            return re.compile(str(pattern))
        except re.error as e:
            raise ActionExecutionError(f"FileEditor.{action}", f"Invalid regex pattern {pattern}: {e}")

    async def read(self, path: str, line_range: str = "all") -> str:
        file_path = self._existing_file(path, "read")
        content = await asyncio.to_thread(_read_text, file_path)
        spec = str(line_range).strip().lower()
        if spec in ("", "all"):
            return content

        lines = content.split("\n")
        try:
            if "-" in spec:
                start_text, end_text = spec.split("-", 1)
                start, end = int(start_text), int(end_text)
                if start < 1 or end < start:
                    raise ValueError("start must be >= 1 and end >= start")
                return f"Lines {start} to {end} of file {path}:\n" + "\n".join(lines[start - 1:end])
            line_no = int(spec)
        except ValueError as e:
            raise ActionExecutionError("FileEditor.read", f"Invalid line range {line_range!r}: {e}")

        if line_no < 1 or line_no > len(lines):
            raise ActionExecutionError(
                "FileEditor.read",
                f"Line number {line_no} is outside file length {len(lines)}",
            )
        return f"Line {line_no} of file {path}:\n{lines[line_no - 1]}"

    async def write(self, path: str, content: Any) -> str:
        file_path = Path(str(path)).expanduser()
        text = _as_text(content)

        def _write() -> int:
            file_path.parent.mkdir(parents=True, exist_ok=True)
            return file_path.write_text(text, encoding="utf-8")

        try:
            written = await asyncio.to_thread(_write)
        except PermissionError:
            raise ActionExecutionError("FileEditor.write", f"No write permission: {path}")
        log.info("Wrote file", path=str(file_path), chars=written)
        return f"Successfully wrote content to file {path}, wrote {written} characters"

    async def find(self, path: str, pattern: str) -> str:
        file_path = self._existing_file(path, "find")
        compiled = self._compile(pattern, "find")
        content = await asyncio.to_thread(_read_text, file_path)

        result_lines: list[str] = []
        count = 0
        for line_no, line in enumerate(content.split("\n"), start=1):
            for match in compiled.finditer(line):
                count += 1
                result_lines.append(
                    f"Line {line_no}: {match.group(0)} (position {match.start()}-{match.end()})"
                )
                result_lines.append(f"  Full line content: {line}")

        if not count:
            return f"No content matching pattern '{pattern}' found in file {path}"
        return "\n".join([f"Found {count} matches in file {path}:", *result_lines])

    async def find_and_replace(self, path: str, pattern: str, replacement: str) -> str:
        file_path = self._existing_file(path, "find_and_replace")
        compiled = self._compile(pattern, "find_and_replace")
        content = await asyncio.to_thread(_read_text, file_path)

        new_content, count = compiled.subn(str(replacement), content)
        modified_lines = 0
        if count:
            old_lines = content.split("\n")
            new_lines = new_content.split("\n")
            modified_lines = sum(
                1 for idx, line in enumerate(old_lines)
                if idx >= len(new_lines) or new_lines[idx] != line
            )
            await asyncio.to_thread(file_path.write_text, new_content, encoding="utf-8")

        return (
            f"In file {path}, replaced pattern '{pattern}' with '{replacement}': "
            f"{count} occurrences, {modified_lines} lines modified"
        )

    async def insert(self, path: str, content: str, line: int | None = None) -> str:
        file_path = self._existing_file(path, "insert")
        lines = (await asyncio.to_thread(_read_text, file_path)).split("\n")

        if line is None:
            lines.append(_as_text(content))
            description = f"Appended content to end of file {path}"
        else:
            line_no = int(line)
            if not 0 < line_no <= len(lines) + 1:
                raise ActionExecutionError(
                    "FileEditor.insert",
                    f"Line number {line_no} exceeds file {path} bounds (1 to {len(lines) + 1})",
                )
            lines.insert(line_no - 1, _as_text(content))
            description = f"Inserted content at line {line_no} of file {path}"

        await asyncio.to_thread(file_path.write_text, "\n".join(lines), encoding="utf-8")
        return description
