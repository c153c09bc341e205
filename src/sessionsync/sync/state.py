"""
Local sync state -- per-conversation metadata and the config file.

Storage layout:
    ~/.sessionsync/
    ├── config.yaml
    └── sync/
        └── <conversation_id>.json   # SyncMetadata
"""

from __future__ import annotations

import logging
from pathlib import Path

import yaml
from pydantic import ValidationError

from .._fs import atomic_write_text, safe_name
from ..models import SyncMetadata
from .models import SyncConfig

logger = logging.getLogger("sessionsync.sync.state")

CONFIG_FILE = "config.yaml"


def load_config(home: Path) -> SyncConfig:
    """Load sync configuration, falling back to defaults on a bad file."""
    config_file = home.expanduser() / CONFIG_FILE
    if config_file.exists():
        try:
            data = yaml.safe_load(config_file.read_text(encoding="utf-8")) or {}
            return SyncConfig(**data)
        except (yaml.YAMLError, ValidationError, TypeError) as exc:
            logger.warning("Failed to load sync config: %s", exc)
    return SyncConfig()


def save_config(home: Path, config: SyncConfig) -> None:
    """Persist sync configuration as YAML."""
    config_file = home.expanduser() / CONFIG_FILE
    data = config.model_dump(mode="json", by_alias=True)
    atomic_write_text(config_file, yaml.dump(data, default_flow_style=False))


class SyncStateStore:
    """Reads and writes ``SyncMetadata`` records.

    Only the sync coordinator writes through this store.

    Args:
        home: Sync home directory (~/.sessionsync).
    """

    def __init__(self, home: Path) -> None:
        self.sync_dir = home.expanduser() / "sync"
        self.sync_dir.mkdir(parents=True, exist_ok=True)

    def _path(self, conversation_id: str) -> Path:
        return self.sync_dir / f"{safe_name(conversation_id)}.json"

    def load(self, conversation_id: str) -> SyncMetadata:
        """Metadata for a conversation; an empty record if never synced."""
        path = self._path(conversation_id)
        if path.exists():
            try:
                return SyncMetadata.model_validate_json(path.read_text(encoding="utf-8"))
            except ValidationError as exc:
                logger.warning(
                    "Sync state for %s unreadable, treating as empty: %s",
                    conversation_id, exc,
                )
        return SyncMetadata(conversation_id=conversation_id)

    def save(self, metadata: SyncMetadata) -> None:
        """Replace the stored record in one atomic write."""
        atomic_write_text(
            self._path(metadata.conversation_id),
            metadata.model_dump_json(indent=2),
        )
