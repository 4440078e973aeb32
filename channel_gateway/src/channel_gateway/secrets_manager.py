"""
secrets_manager
================

Loads secrets for the gateway, most importantly the channel mnemonic.
A secret is read from the environment, or from a file when the
corresponding ``*_FILE`` environment variable is set.  This lets
operators mount the mnemonic into a container as a file instead of
leaking it into the process environment.

Example usage::

    from channel_gateway.secrets_manager import get_default_secrets_manager

    secrets = get_default_secrets_manager()
    mnemonic = secrets.get_secret("MNEMONIC")
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Dict, Optional

logger = logging.getLogger(__name__)


class BaseSecretsManager:
    """Abstract base class for secrets managers."""

    def get_secret(self, name: str) -> Optional[str]:  # pragma: no cover - override
        """Return the secret value for ``name`` or ``None`` if unavailable."""
        raise NotImplementedError


class EnvFileSecretsManager(BaseSecretsManager):
    """
    Loads secrets from environment variables and optional ``*_FILE`` paths.

    If ``{name}_FILE`` is set its contents are used and ``{name}`` is
    ignored.  Relative file paths resolve against ``base_path``.
    """

    def __init__(self, base_path: Optional[Path] = None) -> None:
        self.base_path = base_path
        self._cache: Dict[str, Optional[str]] = {}

    def get_secret(self, name: str) -> Optional[str]:
        if name in self._cache:
            return self._cache[name]

        file_path = os.getenv(f"{name}_FILE")
        if file_path:
            path = Path(file_path)
            if not path.is_absolute() and self.base_path is not None:
                path = self.base_path / path
            try:
                value: Optional[str] = path.read_text(encoding="utf-8").strip()
            except OSError as exc:
                logger.warning("Could not read secret %s from %s: %s", name, path, exc)
                value = None
        else:
            value = os.getenv(name)

        self._cache[name] = value or None
        return self._cache[name]


def get_default_secrets_manager() -> BaseSecretsManager:
    """Return the secrets manager for this process.

    ``SECRETS_BASE_PATH`` sets the directory relative ``*_FILE`` paths
    resolve against (default: the working directory).
    """
    base = os.getenv("SECRETS_BASE_PATH")
    return EnvFileSecretsManager(base_path=Path(base) if base else None)


__all__ = [
    "BaseSecretsManager",
    "EnvFileSecretsManager",
    "get_default_secrets_manager",
]
