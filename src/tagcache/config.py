from __future__ import annotations

import os
import tomllib
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from tomlkit import dumps as toml_dumps

from .paths import SIDECAR_SUFFIX, SUPPORTED_AUDIO_SUFFIXES


DEFAULT_CONFIG_PATH = Path("~/.config/tagcache/config.toml").expanduser()
DEFAULT_SNAPSHOT_PATH = "~/.local/share/tagcache/snapshot.json"
ENV_PREFIX = "TAGCACHE_"


class TagCacheSettings(BaseSettings):
    """Global settings for tagcache.

    Priority (lowest -> highest):
    - Class defaults below
    - TOML file at `config_path` (default: ~/.config/tagcache/config.toml)
    - Environment variables with prefix TAGCACHE_
    - CLI overrides passed to `load(overrides=...)`
    """

    # Logging
    log_level: str = Field(default="INFO", description="Console log level")
    log_json: Optional[str] = Field(default=None, description="Path for structured JSON log file")

    # Library
    library_roots: List[str] = Field(default_factory=list, description="Directories scanned for audio files")
    audio_suffixes: List[str] = Field(
        default_factory=lambda: sorted(SUPPORTED_AUDIO_SUFFIXES),
        description="File suffixes treated as audio",
    )
    sidecar_suffix: str = Field(default=SIDECAR_SUFFIX, description="Suffix of lyrics sidecar files")

    # Sync
    workers: Optional[int] = Field(default=None, ge=1, description="Parallel extraction workers; None=auto (CPU cores)")
    settle_delay: float = Field(default=0.5, ge=0, description="Seconds to wait after a create/modify before decoding")
    debounce_delay: float = Field(default=0.5, ge=0, description="Quiet period before a save is requested")
    force: bool = Field(default=False, description="Re-decode every file on refresh, ignoring cached records")

    # Persistence
    snapshot_path: str = Field(default=DEFAULT_SNAPSHOT_PATH, description="Path to the JSON metadata snapshot")
    autosave: bool = Field(default=True, description="Write the snapshot whenever a save is requested")

    # Cover art
    cover_art_resize: bool = Field(default=False, description="Downscale embedded cover art held in memory")
    cover_art_max_size: int = Field(default=1500, description="Max dimension (width or height) for cover art")

    # Config source/path (not persisted as part of effective config when writing)
    config_path: Path = Field(default=DEFAULT_CONFIG_PATH, exclude=True)

    model_config = SettingsConfigDict(env_prefix=ENV_PREFIX, extra="ignore")

    @staticmethod
    def default_config_path() -> Path:
        return DEFAULT_CONFIG_PATH

    @classmethod
    def _toml_file_source(cls, config_path: Path) -> Dict[str, Any]:
        """Read settings from a TOML file if it exists; return dict values.

        Unknown keys are ignored by pydantic via extra="ignore".
        """
        if not config_path or not config_path.exists():
            return {}
        with config_path.open("rb") as f:
            data = tomllib.load(f)
        if not isinstance(data, dict):
            return {}
        return data  # type: ignore[return-value]

    @classmethod
    def load(
        cls,
        *,
        config_path: Optional[Path] = None,
        overrides: Optional[Dict[str, Any]] = None,
    ) -> "TagCacheSettings":
        """Load settings from defaults + TOML + env + CLI overrides.

        - config_path: path to TOML config; defaults to ~/.config/tagcache/config.toml
        - overrides: dict of CLI values (None values and empty lists are ignored)
        """
        cp = config_path or DEFAULT_CONFIG_PATH
        file_values = cls._toml_file_source(cp)
        # Env overrides file: pydantic-settings gives init kwargs priority, so
        # drop file keys that the environment also sets.
        env_keys = cls._env_keys()
        base = cls(**{k: v for k, v in file_values.items() if k not in env_keys})
        non_none: Dict[str, Any] = {}
        for k, v in (overrides or {}).items():
            if v is None or (isinstance(v, list) and not v):
                continue
            non_none[k] = v
        merged = base.model_dump()
        merged.update(non_none)
        settings = cls(**merged)
        settings.config_path = cp
        return settings

    @classmethod
    def _env_keys(cls) -> set:
        present = {k.upper() for k in os.environ}
        return {name for name in cls.model_fields if f"{ENV_PREFIX}{name}".upper() in present}

    def to_toml(self) -> str:
        """Serialize effective settings (excluding ephemeral fields) to TOML string."""
        data = self.model_dump(exclude={"config_path"}, exclude_none=True)
        return toml_dumps(data)

    def write(self, path: Optional[Path] = None) -> Path:
        """Write effective config to TOML at `path` (or default path). Creates parent dirs.

        Returns the path written.
        """
        target = path or self.config_path or DEFAULT_CONFIG_PATH
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(self.to_toml(), encoding="utf-8")
        return target

    def snapshot_file(self) -> Path:
        return Path(self.snapshot_path).expanduser()


def cli_overrides_from_args(args: Any) -> Dict[str, Any]:
    """Extract known settings keys from argparse Namespace into an overrides dict.

    Unknown keys are ignored; None values are preserved for filtering by `load()`.
    """
    keys = {
        "log_level",
        "log_json",
        "library_roots",
        "workers",
        "settle_delay",
        "debounce_delay",
        "force",
        "snapshot_path",
        "autosave",
        "cover_art_resize",
        "cover_art_max_size",
    }
    result: Dict[str, Any] = {}
    for k in keys:
        if hasattr(args, k):
            result[k] = getattr(args, k)
    return result
