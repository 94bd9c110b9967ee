"""Settings dataclass and its JSON persistence."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Tuple

from cryptography.fernet import Fernet, InvalidToken

from ..threads.models import ThreadMode
from ..utils import file_io
from ..utils.file_io import DEFAULT_DOCUMENT_EXTENSIONS

__all__ = [
    "Settings",
    "SettingsStore",
    "SecretVault",
    "SETTINGS_DIR",
    "redact_secret",
]

LOGGER = logging.getLogger(__name__)
SETTINGS_DIR = Path.home() / ".docthreads"
_SETTINGS_VERSION = 1
_CIPHERTEXT_FIELD = "api_key_ciphertext"
_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}


def _env_bool(raw: str) -> bool:
    return raw.strip().lower() in _TRUE_VALUES


# environment variable -> (field, converter, label used when conversion fails)
_ENV_OVERRIDES: Mapping[str, Tuple[str, Callable[[str], Any], str]] = {
    "DOCTHREADS_API_KEY": ("api_key", str, "string"),
    "DOCTHREADS_BASE_URL": ("base_url", str, "string"),
    "DOCTHREADS_MODEL": ("model", str, "string"),
    "DOCTHREADS_FALLBACK_MODEL": ("fallback_model", str, "string"),
    "DOCTHREADS_ORGANIZATION": ("organization", str, "string"),
    "DOCTHREADS_WORKSPACE_STATE": ("workspace_state_path", str, "string"),
    "DOCTHREADS_DEBUG_LOGGING": ("debug_logging", _env_bool, "boolean"),
    "DOCTHREADS_REQUEST_TIMEOUT": ("request_timeout", float, "float"),
    "DOCTHREADS_TEMPERATURE": ("temperature", float, "float"),
    "DOCTHREADS_MAX_HISTORY": ("max_history_messages", lambda raw: int(raw, 10), "integer"),
}


@dataclass(slots=True)
class Settings:
    """User-configurable settings persisted between sessions."""

    base_url: str = "https://api.openai.com/v1"
    api_key: str = ""
    model: str = "gpt-4o-mini"
    fallback_model: str = "gpt-4o-mini"
    temperature: float = 0.0
    organization: str | None = None
    request_timeout: float = 90.0
    max_retries: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    max_history_messages: int = 40
    supported_extensions: list[str] = field(default_factory=lambda: list(DEFAULT_DOCUMENT_EXTENSIONS))
    default_mode: str = ThreadMode.DEVELOPER.value
    workspace_state_path: str | None = None
    debug_logging: bool = False
    default_headers: dict[str, str] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)


class SecretVault:
    """Fernet encryption for the stored API key.

    Tokens are written as ``"fernet:<token>"``. The key file is created on
    first use, readable only by the owner on POSIX systems.
    """

    strategy = "fernet"

    def __init__(self, *, key_path: Path | None = None) -> None:
        self._key_path = key_path or (SETTINGS_DIR / "settings.key")
        self._fernet: Fernet | None = None

    def encrypt(self, secret: str) -> str:
        if not secret:
            return ""
        token = self._cipher().encrypt(secret.encode("utf-8")).decode("ascii")
        return f"{self.strategy}:{token}"

    def decrypt(self, token: str | None) -> str:
        """Return the plaintext for ``token``; unknown prefixes yield ``""``.

        Raises:
            ValueError: The token carries the Fernet prefix but cannot be decrypted.
        """

        if not token:
            return ""
        prefix, _, payload = token.rpartition(":") if ":" in token else ("", "", token)
        if prefix and prefix != self.strategy:
            LOGGER.warning("Unknown secret token prefix %s; ignoring stored key.", prefix)
            return ""
        try:
            return self._cipher().decrypt(payload.encode("ascii")).decode("utf-8")
        except InvalidToken as exc:
            raise ValueError("Invalid Fernet token") from exc

    def _cipher(self) -> Fernet:
        if self._fernet is None:
            self._fernet = Fernet(self._load_or_create_key())
        return self._fernet

    def _load_or_create_key(self) -> bytes:
        if self._key_path.exists():
            return self._key_path.read_bytes().strip()
        key = Fernet.generate_key()
        file_io.write_text(self._key_path, key.decode("ascii"), encoding="ascii")
        if os.name != "nt":  # pragma: no cover - depends on OS
            os.chmod(self._key_path, 0o600)
        LOGGER.debug("Generated settings key at %s", self._key_path)
        return key


class SettingsStore:
    """Reads and writes :class:`Settings` as versioned JSON."""

    def __init__(self, path: Path | None = None, *, vault: SecretVault | None = None) -> None:
        self._path = path or (SETTINGS_DIR / "settings.json")
        self._vault = vault or SecretVault(key_path=self._path.with_suffix(".key"))

    @property
    def path(self) -> Path:
        return self._path

    @property
    def vault(self) -> SecretVault:
        return self._vault

    def load(self, *, overrides: Mapping[str, Any] | None = None) -> Settings:
        """Load stored settings, then apply ``overrides`` and finally the environment."""

        payload = self._read_payload()
        settings = self._from_payload(payload) if payload else Settings()
        if overrides:
            settings = _with_overrides(settings, overrides, source="CLI")
        env = _environment_overrides()
        if env:
            settings = _with_overrides(settings, env, source="environment")
        return settings

    def save(self, settings: Settings) -> Path:
        data = asdict(settings)
        api_key = data.pop("api_key", "") or ""
        if api_key:
            data[_CIPHERTEXT_FIELD] = self._vault.encrypt(api_key)
        data["version"] = _SETTINGS_VERSION
        data["secret_backend"] = self._vault.strategy
        file_io.write_text(self._path, json.dumps(data, indent=2, sort_keys=True))
        LOGGER.debug("Settings saved to %s", self._path)
        return self._path

    def _from_payload(self, payload: Dict[str, Any]) -> Settings:
        stored_key = self._decrypt_api_key(payload.get(_CIPHERTEXT_FIELD))
        legacy_key = payload.get("api_key")
        known = {item.name for item in fields(Settings)} - {"api_key"}
        try:
            settings = Settings(**{key: value for key, value in payload.items() if key in known})
        except TypeError as exc:
            LOGGER.warning("Settings payload contained unexpected data: %s", exc)
            settings = Settings()
        api_key = stored_key or (str(legacy_key) if legacy_key else "")
        if api_key:
            settings = replace(settings, api_key=api_key)

        if legacy_key and not stored_key:
            LOGGER.info("Detected plaintext API key in settings; re-saving it encrypted.")
            self._resave(settings)
        elif payload.get("version") != _SETTINGS_VERSION:
            self._resave(settings)
        return settings

    def _resave(self, settings: Settings) -> None:
        try:
            self.save(settings)
        except OSError as exc:
            LOGGER.warning("Failed to migrate settings payload: %s", exc)

    def _read_payload(self) -> Dict[str, Any]:
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except json.JSONDecodeError as exc:
            LOGGER.warning("Settings file %s is not valid JSON: %s", self._path, exc)
            return {}
        return data if isinstance(data, dict) else {}

    def _decrypt_api_key(self, ciphertext: str | None) -> str:
        try:
            return self._vault.decrypt(ciphertext)
        except ValueError as exc:
            LOGGER.warning("Unable to decrypt API key: %s", exc)
            return ""


def _with_overrides(settings: Settings, overrides: Mapping[str, Any], *, source: str) -> Settings:
    known = {item.name for item in fields(Settings)}
    accepted = {key: value for key, value in overrides.items() if key in known and value is not None}
    if not accepted:
        return settings
    LOGGER.debug("Applying %s settings overrides: %s", source, sorted(accepted))
    return replace(settings, **accepted)


def _environment_overrides() -> Dict[str, Any]:
    values: Dict[str, Any] = {}
    for env_name, (field_name, convert, label) in _ENV_OVERRIDES.items():
        raw = os.environ.get(env_name)
        if raw is None:
            continue
        try:
            values[field_name] = convert(raw)
        except ValueError:
            LOGGER.warning("Environment override %s=%s is not a valid %s", env_name, raw, label)
    return values


def redact_secret(value: str) -> str:
    stripped = (value or "").strip()
    if not stripped:
        return ""
    if len(stripped) <= 4:
        return "*" * len(stripped)
    return f"{stripped[:2]}{'*' * (len(stripped) - 4)}{stripped[-2:]}"
