from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Mapping, Optional

from dotenv import dotenv_values


class ConfigurationError(RuntimeError):
    """Raised when required configuration is missing or malformed."""


@dataclass
class RetryPolicy:
    '''Pacing and backoff settings for the Dynalist inbox endpoint'''

    max_retries: int = 5
    base_delay: float = 2.0
    max_delay: float = 60.0
    min_pause: float = 1.0
    max_pause: float = 3.0
    timeout: float = 30.0
    # Non rate-limit API errors stop being retried once this many retries happened.
    api_error_retry_window: int = 2


@dataclass
class R2Config:
    '''Cloudflare R2 bucket used for attachment uploads'''

    account_id: str
    access_key_id: str
    secret_access_key: str
    bucket_name: str
    public_url: str

    @property
    def endpoint_url(self) -> str:
        return f"https://{self.account_id}.r2.cloudflarestorage.com"


@dataclass
class EnvConfig:
    '''Expected variables in .env file or the environment'''

    token: Optional[str] = None
    r2: Optional[R2Config] = None
    r2_error: Optional[str] = None
    retry: RetryPolicy = field(default_factory=RetryPolicy)

    def require_token(self) -> str:
        if not self.token:
            raise ConfigurationError("DYNALIST_TOKEN must be set in the environment or .env")
        return self.token


R2_KEYS = {
    "account_id": "CF_ACCOUNT_ID",
    "access_key_id": "CF_ACCESS_KEY_ID",
    "secret_access_key": "CF_SECRET_ACCESS_KEY",
    "bucket_name": "CF_BUCKET_NAME",
    "public_url": "CF_PUBLIC_URL",
}

RETRY_KEYS = {
    "max_retries": ("DYNALIST_MAX_RETRIES", int),
    "base_delay": ("DYNALIST_BASE_DELAY", float),
    "max_delay": ("DYNALIST_MAX_DELAY", float),
    "min_pause": ("DYNALIST_MIN_PAUSE", float),
    "max_pause": ("DYNALIST_MAX_PAUSE", float),
    "timeout": ("DYNALIST_TIMEOUT", float),
}


def _load_r2(raw: Mapping[str, str]) -> tuple[Optional[R2Config], Optional[str]]:
    if not raw.get("CF_ACCOUNT_ID"):
        return None, None

    missing = [env_key for env_key in R2_KEYS.values() if not raw.get(env_key)]
    if missing:
        return None, f"Missing R2 settings: {', '.join(missing)}"

    values = {attr: raw[env_key] for attr, env_key in R2_KEYS.items()}
    values["public_url"] = values["public_url"].rstrip("/")
    return R2Config(**values), None


def _load_retry_policy(raw: Mapping[str, str]) -> RetryPolicy:
    overrides = {}
    for attr, (env_key, cast) in RETRY_KEYS.items():
        value = raw.get(env_key)
        if not value:
            continue
        try:
            overrides[attr] = cast(value)
        except ValueError as exc:
            raise ConfigurationError(f"Invalid value for {env_key}: {value!r}") from exc

    policy = RetryPolicy(**overrides)
    if policy.max_retries < 0:
        raise ConfigurationError("DYNALIST_MAX_RETRIES must not be negative")
    if policy.min_pause < 0 or policy.max_pause < policy.min_pause:
        raise ConfigurationError("DYNALIST_MIN_PAUSE/DYNALIST_MAX_PAUSE must form a valid range")
    if policy.timeout <= 0:
        raise ConfigurationError("DYNALIST_TIMEOUT must be positive")
    if policy.base_delay < 0 or policy.max_delay < 0:
        raise ConfigurationError("Backoff delays must not be negative")
    return policy


def load_env_file(path: Path, environ: Optional[Mapping[str, str]] = None) -> EnvConfig:
    """Merge the optional .env file with the process environment into an EnvConfig.

    Process environment variables win over values from the file, so a
    container can override whatever a local .env carries.
    """

    raw: Dict[str, str] = {}
    if path.is_file():
        raw.update({key: value for key, value in dotenv_values(path).items() if value is not None})
    raw.update(os.environ if environ is None else environ)

    r2, r2_error = _load_r2(raw)
    return EnvConfig(
        token=(raw.get("DYNALIST_TOKEN") or "").strip() or None
        ,r2=r2
        ,r2_error=r2_error
        ,retry=_load_retry_policy(raw)
    )
