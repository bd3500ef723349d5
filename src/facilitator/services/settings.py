"""Facilitator configuration and its on-disk persistence.

Settings live in ``~/.facilitator/settings.json``. The API key is never
written in clear text: it is stored as a Fernet token whose key sits next to
the settings file. ``FACILITATOR_*`` environment variables override whatever
is on disk.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Callable, Dict, Mapping

from cryptography.fernet import Fernet, InvalidToken

__all__ = [
    "Settings",
    "SettingsStore",
    "SecretVault",
    "redact_secret",
]

LOGGER = logging.getLogger(__name__)

_SETTINGS_DIR = Path.home() / ".facilitator"
_SETTINGS_VERSION = 1
_CIPHERTEXT_KEY = "api_key_ciphertext"
_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}


def _parse_flag(value: str) -> bool:
    return value.strip().lower() in _TRUE_VALUES


# Environment variable -> (settings field, parser)
_ENV_OVERRIDES: Mapping[str, tuple[str, Callable[[str], Any]]] = {
    "FACILITATOR_API_KEY": ("api_key", str),
    "FACILITATOR_BASE_URL": ("base_url", str),
    "FACILITATOR_MODEL": ("model", str),
    "FACILITATOR_ORGANIZATION": ("organization", str),
    "FACILITATOR_PERSONA_NAME": ("persona_name", str),
    "FACILITATOR_DEBUG_LOGGING": ("debug_logging", _parse_flag),
    "FACILITATOR_DEBUG_EVENT_LOGGING": ("debug_event_logging", _parse_flag),
    "FACILITATOR_REQUEST_TIMEOUT": ("request_timeout", float),
    "FACILITATOR_TEMPERATURE": ("temperature", float),
    "FACILITATOR_MAX_TURNS": ("max_turns", int),
    "FACILITATOR_HISTORY_WINDOW": ("history_window", int),
    "FACILITATOR_GREETING_BATCH_SIZE": ("greeting_batch_size", int),
    "FACILITATOR_DIAGNOSTICS_CAPACITY": ("diagnostics_capacity", int),
}


@dataclass(slots=True)
class Settings:
    """Runtime configuration for the facilitator service."""

    base_url: str = "https://api.openai.com/v1"
    api_key: str = ""
    model: str = "gpt-4o-mini"
    temperature: float = 0.7
    organization: str | None = None
    request_timeout: float = 90.0
    max_retries: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    max_turns: int = 20
    max_thinking_tokens: int = 8_000
    history_window: int = 20
    greeting_batch_size: int = 20
    diagnostics_capacity: int = 50
    persona_name: str = "Facilitator"
    persona_prompt: str = (
        "You are a friendly facilitator who helps people organise ideas, "
        "documents and conversations. Ask clarifying questions when a request is ambiguous."
    )
    default_headers: dict[str, str] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)
    debug_logging: bool = False
    debug_event_logging: bool = False


class SecretVault:
    """Fernet encryption for secrets stored in the settings file.

    Tokens are written as ``fernet:<payload>``. The key is generated on first
    use and kept in ``key_path`` with owner-only permissions.
    """

    strategy = "fernet"

    def __init__(self, *, key_path: Path | None = None) -> None:
        self._key_path = key_path or (_SETTINGS_DIR / "settings.key")
        self._fernet: Fernet | None = None

    @property
    def key_path(self) -> Path:
        return self._key_path

    def encrypt(self, secret: str) -> str:
        if not secret:
            return ""
        token = self._cipher().encrypt(secret.encode("utf-8")).decode("ascii")
        return f"{self.strategy}:{token}"

    def decrypt(self, token: str | None) -> str:
        """Return the plaintext for ``token``.

        Raises:
            ValueError: If the token was produced by another key or backend.
        """

        if not token:
            return ""
        prefix, _, payload = token.partition(":")
        if not payload:
            prefix, payload = self.strategy, token
        if prefix != self.strategy:
            raise ValueError(f"Unsupported secret backend '{prefix}'")
        try:
            return self._cipher().decrypt(payload.encode("ascii")).decode("utf-8")
        except InvalidToken as exc:
            raise ValueError("Secret could not be decrypted with the current key") from exc

    def _cipher(self) -> Fernet:
        if self._fernet is None:
            self._fernet = Fernet(self._read_or_create_key())
        return self._fernet

    def _read_or_create_key(self) -> bytes:
        if self._key_path.exists():
            return self._key_path.read_bytes().strip()
        self._key_path.parent.mkdir(parents=True, exist_ok=True)
        key = Fernet.generate_key()
        staging = self._key_path.with_suffix(".tmp")
        staging.write_bytes(key)
        if os.name != "nt":  # pragma: no cover - depends on OS
            os.chmod(staging, 0o600)
        staging.replace(self._key_path)
        LOGGER.info("Generated new settings encryption key at %s", self._key_path)
        return key


class SettingsStore:
    """Loads and saves :class:`Settings` as JSON."""

    def __init__(self, path: Path | None = None, *, vault: SecretVault | None = None) -> None:
        self._path = path or (_SETTINGS_DIR / "settings.json")
        self._vault = vault or SecretVault(key_path=self._path.with_suffix(".key"))

    @property
    def path(self) -> Path:
        return self._path

    @property
    def vault(self) -> SecretVault:
        return self._vault

    def load(self, *, overrides: Mapping[str, Any] | None = None) -> Settings:
        """Return the effective settings.

        Precedence, lowest first: defaults, the JSON file, ``overrides``,
        ``FACILITATOR_*`` environment variables. A plaintext ``api_key`` found
        on disk, or a file written by another format version, is rewritten in
        the current format.
        """

        payload = self._read_payload()
        settings, needs_rewrite = self._from_payload(payload)
        if needs_rewrite:
            try:
                self.save(settings)
            except OSError as exc:
                LOGGER.warning("Failed to rewrite settings file %s: %s", self._path, exc)

        if overrides:
            settings = _merge(settings, overrides, source="explicit")
        env_overrides = _read_env_overrides()
        if env_overrides:
            settings = _merge(settings, env_overrides, source="environment")
        return settings

    def save(self, settings: Settings) -> Path:
        """Write ``settings`` atomically and return the file path."""

        document = asdict(settings)
        api_key = document.pop("api_key", "")
        if api_key:
            document[_CIPHERTEXT_KEY] = self._vault.encrypt(api_key)
        document["version"] = _SETTINGS_VERSION
        document["secret_backend"] = self._vault.strategy

        self._path.parent.mkdir(parents=True, exist_ok=True)
        staging = self._path.with_suffix(".tmp")
        staging.write_text(json.dumps(document, indent=2, sort_keys=True), encoding="utf-8")
        staging.replace(self._path)
        LOGGER.debug("Settings saved to %s", self._path)
        return self._path

    def _read_payload(self) -> Dict[str, Any]:
        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except json.JSONDecodeError as exc:
            LOGGER.warning("Ignoring settings file %s: invalid JSON (%s)", self._path, exc)
            return {}
        if not isinstance(payload, dict):
            LOGGER.warning("Ignoring settings file %s: expected a JSON object", self._path)
            return {}
        return payload

    def _from_payload(self, payload: Dict[str, Any]) -> tuple[Settings, bool]:
        if not payload:
            return Settings(), False

        ciphertext = payload.pop(_CIPHERTEXT_KEY, None)
        plaintext = payload.pop("api_key", None)
        needs_rewrite = payload.get("version") != _SETTINGS_VERSION
        api_key = ""
        if ciphertext:
            try:
                api_key = self._vault.decrypt(ciphertext)
            except ValueError as exc:
                LOGGER.warning("Stored API key is unreadable and was ignored: %s", exc)
        elif plaintext:
            LOGGER.info("Migrating plaintext API key in %s to encrypted storage", self._path)
            api_key = str(plaintext)
            needs_rewrite = True

        known = {item.name for item in fields(Settings)} - {"api_key"}
        values = {key: value for key, value in payload.items() if key in known}
        try:
            settings = Settings(**values)
        except TypeError as exc:
            LOGGER.warning("Settings file %s contained unexpected data: %s", self._path, exc)
            settings = Settings()
        return replace(settings, api_key=api_key), needs_rewrite


def _merge(settings: Settings, overrides: Mapping[str, Any], *, source: str) -> Settings:
    known = {item.name for item in fields(Settings)}
    updates = {key: value for key, value in overrides.items() if key in known and value is not None}
    extra_metadata = updates.get("metadata")
    if isinstance(extra_metadata, Mapping):
        updates["metadata"] = {**settings.metadata, **extra_metadata}
    if not updates:
        return settings
    LOGGER.debug("Applying %s settings overrides: %s", source, sorted(updates))
    return replace(settings, **updates)


def _read_env_overrides() -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    for env_name, (field_name, parse) in _ENV_OVERRIDES.items():
        raw = os.environ.get(env_name)
        if raw is None:
            continue
        try:
            overrides[field_name] = parse(raw)
        except ValueError:
            LOGGER.warning("Ignoring environment override %s=%r: not a valid value", env_name, raw)
    return overrides


def redact_secret(value: str) -> str:
    """Mask all but the first and last two characters of ``value``."""

    stripped = (value or "").strip()
    if len(stripped) <= 4:
        return "*" * len(stripped)
    return f"{stripped[:2]}{'*' * (len(stripped) - 4)}{stripped[-2:]}"
