"""Line-oriented access to ``KEY=value`` environment and secret files.

Reads and writes are plain blocking file operations pushed onto a worker
thread so the public coroutines yield at every file access.
"""

from __future__ import annotations

import asyncio
import os
import re
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import structlog

from envkeeper.errors import EnvironmentFileError, KeyNotFoundError

logger = structlog.get_logger(__name__)

PathLike = os.PathLike[str] | str


def _line_pattern(name: str) -> re.Pattern[str]:
    return re.compile(rf"^\s*(?:export\s+)?{re.escape(name)}\s*=")


def _strip_quotes(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] and value[0] in {'"', "'"}:
        return value[1:-1]
    return value


class EnvironmentFileParser:
    """Parse and rewrite environment files living under ``env_dir``."""

    def __init__(self, env_dir: PathLike) -> None:
        self.env_dir = Path(env_dir)

    def resolve_path(self, environment_file: PathLike) -> Path:
        path = Path(environment_file)
        return path if path.is_absolute() else self.env_dir / path

    async def read_lines(self, environment_file: PathLike) -> List[str]:
        path = self.resolve_path(environment_file)
        return await asyncio.to_thread(self._read_lines_sync, path)

    @staticmethod
    def _read_lines_sync(path: Path) -> List[str]:
        try:
            return path.read_text(encoding="utf-8").splitlines()
        except FileNotFoundError as exc:
            logger.error("environment_file_missing", path=str(path))
            raise EnvironmentFileError(f"Environment file not found: {path}") from exc
        except OSError as exc:
            logger.exception("environment_file_read_failed", path=str(path))
            raise EnvironmentFileError(f"Unable to read environment file {path}") from exc

    @staticmethod
    def extract_variables(lines: Sequence[str]) -> Dict[str, str]:
        """Return ``{name: value}`` for every assignment line, ignoring comments."""

        variables: Dict[str, str] = {}
        for raw in lines:
            line = raw.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue
            name, value = line.split("=", 1)
            name = name.strip()
            if name.startswith("export "):
                name = name[len("export ") :].strip()
            if name:
                variables[name] = _strip_quotes(value.strip())
        return variables

    @staticmethod
    def update_lines(lines: Sequence[str], name: str, value: str) -> List[str]:
        """Rewrite the ``name=`` line in place, appending it when absent."""

        pattern = _line_pattern(name)
        updated = list(lines)
        for index, line in enumerate(updated):
            if pattern.match(line):
                updated[index] = f"{name}={value}"
                return updated
        updated.append(f"{name}={value}")
        return updated

    async def write_lines(self, environment_file: PathLike, lines: Sequence[str]) -> Path:
        path = self.resolve_path(environment_file)
        content = "\n".join(lines)
        if content and not content.endswith("\n"):
            content += "\n"
        await asyncio.to_thread(_write_text, path, content)
        logger.debug("environment_file_written", path=str(path), lines=len(lines))
        return path


def _write_text(path: Path, content: str) -> None:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_name(f".{path.name}.tmp")
        tmp_path.write_text(content, encoding="utf-8")
        os.replace(tmp_path, path)
    except OSError as exc:
        logger.exception("environment_file_write_failed", path=str(path))
        raise EnvironmentFileError(f"Unable to write environment file {path}") from exc


class EnvironmentSecretFileManager:
    """Read and update individual secrets held in the base secret file."""

    def __init__(self, env_dir: PathLike, parser: Optional[EnvironmentFileParser] = None) -> None:
        self.parser = parser or EnvironmentFileParser(env_dir)

    def resolve_environment_file_path(self, environment_file: PathLike) -> Path:
        return self.parser.resolve_path(environment_file)

    async def get_key_value(self, key_file: PathLike, key_name: str) -> Optional[str]:
        path = self.resolve_environment_file_path(key_file)
        if not path.exists():
            logger.warning("secret_file_missing", path=str(path), key=key_name)
            return None
        lines = await self.parser.read_lines(path)
        value = self.parser.extract_variables(lines).get(key_name)
        return value or None

    async def update_key_value(self, key_file: PathLike, key_name: str, value: str) -> None:
        path = self.resolve_environment_file_path(key_file)
        lines = await self.parser.read_lines(path)
        if key_name not in self.parser.extract_variables(lines):
            raise KeyNotFoundError(f"Key '{key_name}' not found in {path}")
        await self.parser.write_lines(path, self.parser.update_lines(lines, key_name, value))
        logger.info("secret_key_value_updated", key=key_name, path=str(path))

    async def get_or_create_base_env_file_content(self, key_file: PathLike) -> str:
        path = self.resolve_environment_file_path(key_file)
        return await asyncio.to_thread(_read_or_create, path)

    async def write_base_env_file(self, key_file: PathLike, content: str) -> Path:
        path = self.resolve_environment_file_path(key_file)
        await asyncio.to_thread(_write_text, path, content)
        return path


def _read_or_create(path: Path) -> str:
    try:
        if not path.exists():
            path.parent.mkdir(parents=True, exist_ok=True)
            path.touch()
            logger.info("secret_file_created", path=str(path))
            return ""
        return path.read_text(encoding="utf-8")
    except OSError as exc:
        logger.exception("secret_file_access_failed", path=str(path))
        raise EnvironmentFileError(f"Unable to access secret file {path}") from exc


__all__ = ["EnvironmentFileParser", "EnvironmentSecretFileManager"]
