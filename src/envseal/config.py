"""Configuration for envseal."""

import os
from dataclasses import dataclass
from pathlib import Path

# Document layout
METADATA_KEY = "_envseal"
SECRETS_KEY = "secrets"
RESERVED_KEYS = frozenset({METADATA_KEY, SECRETS_KEY})

DEFAULT_SECRETS_FILE_NAME = "secrets.enc.yaml"
MANIFEST_FILE_NAME = "envseal.yaml"
IDENTITY_DIR_NAME = ".envseal"
IDENTITY_FILE_NAME = "identity"

FILE_MODE = 0o600
IDENTITY_DIR_MODE = 0o700

DEFAULT_LOG_LEVEL = "WARNING"


def get_identity_file() -> Path:
    """Get the private identity file path."""
    env_key = os.environ.get("ENVSEAL_IDENTITY_FILE")
    if env_key:
        return Path(env_key).expanduser()
    return Path.home() / IDENTITY_DIR_NAME / IDENTITY_FILE_NAME


def get_secrets_file() -> Path:
    """Get the secrets file path (relative to the working directory by default)."""
    env_file = os.environ.get("ENVSEAL_SECRETS_FILE")
    if env_file:
        return Path(env_file).expanduser()
    return Path(DEFAULT_SECRETS_FILE_NAME)


def get_manifest_file() -> Path:
    """Get the roster manifest path."""
    env_file = os.environ.get("ENVSEAL_MANIFEST_FILE")
    if env_file:
        return Path(env_file).expanduser()
    return Path(MANIFEST_FILE_NAME)


def get_log_level() -> str:
    return os.environ.get("ENVSEAL_LOG_LEVEL", DEFAULT_LOG_LEVEL).upper()


@dataclass(frozen=True)
class Settings:
    """Resolved file locations, passed explicitly to whatever needs them."""

    secrets_file: Path
    manifest_file: Path
    identity_file: Path

    @classmethod
    def from_env(cls, secrets_file: Path = None, manifest_file: Path = None,
                 identity_file: Path = None) -> "Settings":
        """Build settings from the environment, letting explicit paths win."""
        return cls(
            secrets_file=Path(secrets_file).expanduser() if secrets_file else get_secrets_file(),
            manifest_file=Path(manifest_file).expanduser() if manifest_file else get_manifest_file(),
            identity_file=Path(identity_file).expanduser() if identity_file else get_identity_file(),
        )
