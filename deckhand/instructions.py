"""Prompt templates used by the agent loop.

Packaged templates sit in ``deckhand/prompts/``. A file with the same name in
the personal directory (``~/.deckhand/instructions/``) shadows the packaged
one; ``DECKHAND_INSTRUCTIONS_DIR`` swaps the packaged directory out entirely.
"""

from __future__ import annotations

import os
from pathlib import Path

PACKAGED_PROMPTS_DIR = Path(__file__).resolve().parent / "prompts"
PERSONAL_PROMPTS_DIR = Path("~/.deckhand/instructions").expanduser()


class _KeepMissing(dict):
    def __missing__(self, key: str) -> str:
        return "{%s}" % key


def _as_dir(value: Path | str) -> Path:
    return Path(value).expanduser().resolve()


class InstructionLoader:
    """Look up templates by file name and fill their ``{placeholders}``."""

    def __init__(
        self,
        base_dir: Path | str | None = None,
        personal_dir: Path | str | None = None,
    ):
        if base_dir is None:
            base_dir = os.getenv("DECKHAND_INSTRUCTIONS_DIR") or PACKAGED_PROMPTS_DIR
        self.base_dir = _as_dir(base_dir)
        self.personal_dir = _as_dir(personal_dir if personal_dir is not None else PERSONAL_PROMPTS_DIR)
        self._templates: dict[str, str] = {}

    @property
    def search_path(self) -> tuple[Path, Path]:
        return self.personal_dir, self.base_dir

    def load(self, name: str) -> str:
        """Template text with surrounding whitespace removed.

        Raises:
            FileNotFoundError: when no directory in the search path has ``name``
        """
        if name not in self._templates:
            for directory in self.search_path:
                candidate = directory / name
                if candidate.is_file():
                    self._templates[name] = candidate.read_text(encoding="utf-8").strip()
                    break
            else:
                raise FileNotFoundError(f"Instruction template not found: {self.base_dir / name}")
        return self._templates[name]

    def render(self, name: str, **variables: object) -> str:
        """Fill known placeholders; unknown ``{names}`` stay as written."""
        values = _KeepMissing((key, str(value)) for key, value in variables.items())
        return self.load(name).format_map(values)


_loader: InstructionLoader | None = None


def get_instruction_loader() -> InstructionLoader:
    """Shared loader for the packaged prompts."""
    global _loader
    if _loader is None:
        _loader = InstructionLoader()
    return _loader
