# shipline/pipeline/secrets.py
"""
Secret store adapters.

Secrets are resolved at stage boundaries: just before a stage (or its
rollback) runs, and only the names that stage declares. Values are never
persisted or logged; log output is passed through redact().
"""

import logging
import os
from abc import ABC, abstractmethod
from collections.abc import Iterable, Mapping
from pathlib import Path

import yaml

from shipline.config.schema import SecretsConfig
from shipline.errors import SecretNotFoundError, SecretStoreError

logger = logging.getLogger(__name__)

REDACTED = "***"


class SecretStore(ABC):
    """Abstract source of secret values."""

    @abstractmethod
    def get(self, name: str) -> str | None:
        """
        Look up a single secret.

        Args:
            name: Secret name (e.g. "NEXUS_PASSWORD")

        Returns:
            The value, or None if this store does not have it
        """
        pass

    def resolve(self, names: Iterable[str]) -> dict[str, str]:
        """
        Resolve a set of secrets, failing if any is missing.

        Raises:
            SecretNotFoundError: Listing every name that could not be resolved
        """
        resolved: dict[str, str] = {}
        missing: list[str] = []
        for name in names:
            value = self.get(name)
            if value is None:
                missing.append(name)
            else:
                resolved[name] = value

        if missing:
            raise SecretNotFoundError(missing)

        if resolved:
            logger.info(f"Resolved {len(resolved)} secret(s): {sorted(resolved)}")
        return resolved


class EnvSecretStore(SecretStore):
    """Secrets from environment variables (prefixed name first, then bare name)."""

    def __init__(self, prefix: str = "SHIPLINE_SECRET_", environ: Mapping[str, str] | None = None) -> None:
        self._prefix = prefix
        self._environ = environ

    def get(self, name: str) -> str | None:
        environ = self._environ if self._environ is not None else os.environ
        if self._prefix and f"{self._prefix}{name}" in environ:
            return environ[f"{self._prefix}{name}"]
        return environ.get(name)


class FileSecretStore(SecretStore):
    """
    Secrets from a YAML mapping file, loaded lazily on first access.

    A missing file behaves as an empty store.
    """

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path).expanduser()
        self._values: dict[str, str] | None = None

    def _load(self) -> dict[str, str]:
        if self._values is not None:
            return self._values

        if not self._path.exists():
            logger.warning(f"Secrets file {self._path} does not exist")
            self._values = {}
            return self._values

        try:
            data = yaml.safe_load(self._path.read_text(encoding="utf-8")) or {}
        except (OSError, yaml.YAMLError) as e:
            raise SecretStoreError(f"Cannot read secrets file {self._path}: {e}") from e

        if not isinstance(data, dict):
            raise SecretStoreError(f"Secrets file {self._path} must contain a mapping")

        self._values = {str(k): str(v) for k, v in data.items() if v is not None}
        logger.info(f"Loaded {len(self._values)} secret(s) from {self._path}")
        return self._values

    def get(self, name: str) -> str | None:
        return self._load().get(name)


class ChainedSecretStore(SecretStore):
    """Tries each store in order; the first one that has a value wins."""

    def __init__(self, stores: list[SecretStore]) -> None:
        self._stores = stores

    def get(self, name: str) -> str | None:
        for store in self._stores:
            value = store.get(name)
            if value is not None:
                return value
        return None


def create_secret_store(config: SecretsConfig) -> SecretStore:
    """Build the secret store described by config (env, plus file when set)."""
    env_store = EnvSecretStore(prefix=config.env_prefix)
    if config.file:
        return ChainedSecretStore([env_store, FileSecretStore(config.file)])
    return env_store


def redact(text: str, values: Iterable[str]) -> str:
    """Replace every non-empty secret value in text with ***."""
    for value in sorted({v for v in values if v}, key=len, reverse=True):
        text = text.replace(value, REDACTED)
    return text
