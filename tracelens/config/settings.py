from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

from ..errors import ConfigurationError


# Load .env from current working directory or parents
load_dotenv()  # honors .env and .env.<environment> if present

DEFAULT_MODEL = "gpt-4o-mini"
DEFAULT_DB_PATH = Path.home() / ".tracelens" / "tracelens.db"


@dataclass(frozen=True)
class Settings:
    openai_api_key: Optional[str] = None
    openai_model: str = DEFAULT_MODEL
    openai_base_url: Optional[str] = None
    db_path: Path = DEFAULT_DB_PATH
    log_level: str = "INFO"

    @staticmethod
    def from_env() -> "Settings":
        return Settings(
            openai_api_key=os.getenv("OPENAI_API_KEY") or None,
            openai_model=os.getenv("OPENAI_MODEL", DEFAULT_MODEL),
            openai_base_url=os.getenv("OPENAI_BASE_URL") or None,
            db_path=Path(os.getenv("TRACELENS_DB_PATH") or DEFAULT_DB_PATH).expanduser(),
            log_level=os.getenv("TRACELENS_LOG_LEVEL", "INFO"),
        )


def get_openai_api_key(override: Optional[str] = None) -> str:
    if override:
        return override
    key = Settings.from_env().openai_api_key
    if not key:
        raise ConfigurationError(
            "OPENAI_API_KEY not configured. Create a .env file with OPENAI_API_KEY=... or set the env var."
        )
    return key


@dataclass(frozen=True)
class SourceToggles:
    """Which captured sources the agent may read for one query.

    The tracker's capture switches live in the host; they are passed in here
    explicitly instead of being read from process state.
    """

    ocr: bool = True
    files: bool = True
    music: bool = True

    def enabled(self, source: str) -> bool:
        return bool(getattr(self, source, True))

    def with_enabled(self, sources: List[str]) -> "SourceToggles":
        flags = {"ocr": self.ocr, "files": self.files, "music": self.music}
        for s in sources:
            if s in flags:
                flags[s] = True
        return SourceToggles(**flags)


@dataclass(frozen=True)
class QuerySettings:
    api_key: str
    model_id: str = DEFAULT_MODEL
    enabled: bool = True
    base_url: Optional[str] = None
    sources: SourceToggles = field(default_factory=SourceToggles)

    @staticmethod
    def from_env(api_key: Optional[str] = None, model_id: Optional[str] = None) -> "QuerySettings":
        env = Settings.from_env()
        return QuerySettings(
            api_key=api_key or env.openai_api_key or "",
            model_id=model_id or env.openai_model,
            base_url=env.openai_base_url,
        )

    def validate(self) -> None:
        if not self.enabled:
            raise ConfigurationError("AI is disabled in settings")
        if not (self.api_key or "").strip():
            raise ConfigurationError("AI is disabled or API key is missing")
