"""Global configuration management (~/.leetcli_py.global)."""

import json
import os
from pathlib import Path
from typing import Optional
from dataclasses import dataclass


@dataclass
class GlobalConfig:
    """
    Global configuration storing the LeetCode session cookies.
    Stored at ~/.leetcli_py.global
    """

    session: str = ""
    csrf_token: str = ""
    username: str = ""

    @staticmethod
    def default_path() -> Path:
        return Path.home() / ".leetcli_py.global"

    @classmethod
    def load(cls, path: Optional[Path] = None) -> "GlobalConfig":
        """Load global config from file."""
        if path is None:
            path = cls.default_path()

        if not path.exists():
            return cls()

        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
                return cls(
                    session=data.get("session", ""),
                    csrf_token=data.get("csrf_token", ""),
                    username=data.get("username", ""),
                )
        except (json.JSONDecodeError, IOError, AttributeError):
            return cls()

    def save(self, path: Optional[Path] = None) -> None:
        """Save global config to file, readable by the owner only."""
        if path is None:
            path = self.default_path()

        data = {
            "session": self.session,
            "csrf_token": self.csrf_token,
            "username": self.username,
        }
        with open(path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
        os.chmod(path, 0o600)

    def has_credentials(self) -> bool:
        """Check if session cookies are stored."""
        return bool(self.session and self.csrf_token)
