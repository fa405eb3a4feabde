"""Secret storage with per-name source tracking."""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from dotenv import dotenv_values

logger = logging.getLogger(__name__)


class EnvshieldError(Exception):
    """Base exception for envshield errors."""
    pass


@dataclass
class SecretEntry:
    """A secret value plus every source that ever defined it."""

    value: str
    sources: List[str] = field(default_factory=list)
    active_source: str = ""


class SecretStore:
    """
    Named secret values merged from ordered sources.

    A later ``set`` for the same name overwrites the value and becomes the
    active source, while the source history keeps growing. Lookups of
    unknown names return None or an empty result, never raise.
    """

    def __init__(self) -> None:
        self._secrets: Dict[str, SecretEntry] = {}

    def set(self, name: str, value: str, source: str) -> None:
        entry = self._secrets.get(name)
        if entry is None:
            self._secrets[name] = SecretEntry(value=value, sources=[source], active_source=source)
            return
        entry.value = value
        entry.sources.append(source)
        entry.active_source = source

    def get(self, name: str) -> Optional[str]:
        entry = self._secrets.get(name)
        return entry.value if entry else None

    def has(self, name: str) -> bool:
        return name in self._secrets

    def names(self) -> List[str]:
        """Secret names in first-insertion order."""
        return list(self._secrets)

    def sources(self, name: str) -> List[str]:
        entry = self._secrets.get(name)
        return list(entry.sources) if entry else []

    def active_source(self, name: str) -> Optional[str]:
        entry = self._secrets.get(name)
        return entry.active_source if entry else None

    def values(self) -> Dict[str, str]:
        """Point-in-time snapshot of name -> value."""
        return {name: entry.value for name, entry in self._secrets.items()}

    def all_values(self) -> List[str]:
        return [entry.value for entry in self._secrets.values()]

    def __len__(self) -> int:
        return len(self._secrets)


def load_secrets(project_dir: Path, env_files: Iterable[str]) -> SecretStore:
    """
    Build a SecretStore from dotenv files under project_dir.

    Files are applied in the given order, so a later file overrides an
    earlier one. Missing files are skipped; unreadable ones are logged and
    skipped. Each file is applied at most once.
    """
    store = SecretStore()
    seen = set()

    for env_file in env_files:
        if env_file in seen:
            continue
        seen.add(env_file)

        file_path = Path(project_dir) / env_file
        if not file_path.is_file():
            continue

        try:
            parsed = dotenv_values(file_path, interpolate=False, encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            logger.warning("Skipping unreadable secrets file %s: %s", file_path, e)
            continue

        for key, value in parsed.items():
            # Bare keys without '=' parse as None
            if value is not None:
                store.set(key, value, env_file)

        logger.debug("Loaded %d keys from %s", len(parsed), file_path)

    return store
