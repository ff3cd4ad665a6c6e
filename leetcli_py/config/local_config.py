"""Local configuration management (.leetcli_py.local)."""

import json
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional
from dataclasses import dataclass, field

from .engine_config import EngineConfig


class Language(str, Enum):
    """Languages accepted by the judge, by their submission slug."""

    CPP = "cpp"
    JAVA = "java"
    PYTHON = "python"
    PYTHON3 = "python3"
    C = "c"
    CSHARP = "csharp"
    JAVASCRIPT = "javascript"
    TYPESCRIPT = "typescript"
    PHP = "php"
    SWIFT = "swift"
    KOTLIN = "kotlin"
    GOLANG = "golang"
    RUBY = "ruby"
    SCALA = "scala"
    RUST = "rust"

    @classmethod
    def from_extension(cls, suffix: str) -> Optional["Language"]:
        """Guess the language of a solution file from its suffix."""
        return _EXTENSIONS.get(suffix.lower().lstrip("."))


_EXTENSIONS = {
    "cpp": Language.CPP,
    "cc": Language.CPP,
    "java": Language.JAVA,
    "py": Language.PYTHON3,
    "c": Language.C,
    "cs": Language.CSHARP,
    "js": Language.JAVASCRIPT,
    "ts": Language.TYPESCRIPT,
    "php": Language.PHP,
    "swift": Language.SWIFT,
    "kt": Language.KOTLIN,
    "go": Language.GOLANG,
    "rb": Language.RUBY,
    "scala": Language.SCALA,
    "rs": Language.RUST,
}


@dataclass
class LocalConfig:
    """
    Local settings for a practice workspace.
    Stored at .leetcli_py.local in project directory.
    Holds the default language, the editor command and engine overrides.
    """

    language: Language = Language.PYTHON3
    editor: str = ""
    engine: Dict[str, Any] = field(default_factory=dict)

    FILE_NAME = ".leetcli_py.local"

    @classmethod
    def load(cls, path: Optional[Path] = None) -> Optional["LocalConfig"]:
        """
        Load local config from file.
        If path is not specified, searches upward from current directory.
        """
        if path is None:
            path = cls.find_config()

        if path is None or not path.exists():
            return None

        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
                return cls(
                    language=Language(data.get("language", Language.PYTHON3.value)),
                    editor=data.get("editor", ""),
                    engine=dict(data.get("engine") or {}),
                )
        except (json.JSONDecodeError, IOError, TypeError, ValueError, AttributeError):
            return None

    def save(self, path: Optional[Path] = None) -> None:
        """Save local config to file."""
        if path is None:
            path = Path.cwd() / self.FILE_NAME

        data = {
            "language": self.language.value,
            "editor": self.editor,
            "engine": self.engine,
        }

        with open(path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False)

    def engine_config(self) -> EngineConfig:
        return EngineConfig.from_dict(self.engine)

    @classmethod
    def find_config(cls) -> Optional[Path]:
        """
        Search for .leetcli_py.local starting from current directory,
        walking up to root.
        """
        current = Path.cwd()

        while True:
            config_path = current / cls.FILE_NAME
            if config_path.exists():
                return config_path

            # Check if we've reached the root
            if current == current.parent:
                return None

            current = current.parent
