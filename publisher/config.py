"""Configuration utilities shared by the publish pipeline."""

from __future__ import annotations

import base64
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional

DEFAULT_STORAGE_ROOT = Path("storage")
DEFAULT_LOG_DIR = DEFAULT_STORAGE_ROOT / "logs"
DEFAULT_AUDIT_LOG_NAME = "website-job-publish.ndjson"

DEFAULT_USER_AGENT = "website-publisher/1.0"
DEFAULT_MEDIA_CLASS_PREFIX = "site-media"
DEFAULT_CLAIM_TIMEOUT = 600.0


class ConfigurationError(RuntimeError):
    """Raised when CMS credentials or settings are missing or unsafe."""


@dataclass(slots=True)
class TimeoutConfig:
    request_timeout: float = 15.0
    media_timeout: float = 60.0


@dataclass(slots=True)
class CmsCredentials:
    """Credentials for one WordPress site, resolved once per invocation."""

    site_key: str
    base_url: str
    username: str
    app_password: str

    def auth_header(self) -> str:
        token = base64.b64encode(f"{self.username}:{self.app_password}".encode("utf-8"))
        return f"Basic {token.decode('ascii')}"


@dataclass(slots=True)
class PublishConfig:
    log_dir: Path = DEFAULT_LOG_DIR
    audit_log_name: str = DEFAULT_AUDIT_LOG_NAME
    user_agent: str = DEFAULT_USER_AGENT
    page_status: str = "draft"
    update_title: bool = False
    create_missing_pages: bool = False
    staging_only: bool = False
    media_class_prefix: str = DEFAULT_MEDIA_CLASS_PREFIX
    claim_timeout: float = DEFAULT_CLAIM_TIMEOUT
    timeout: TimeoutConfig = field(default_factory=TimeoutConfig)

    def ensure_directories(self) -> None:
        self.log_dir.mkdir(parents=True, exist_ok=True)

    @property
    def audit_log_path(self) -> Path:
        return self.log_dir / self.audit_log_name


def site_env_prefix(site_key: str) -> str:
    """Return the environment variable prefix for a site key (``llif-staging`` -> ``WP_LLIF_STAGING``)."""

    cleaned = site_key.strip()
    if not cleaned:
        raise ConfigurationError("Site key must not be empty")
    return "WP_" + cleaned.upper().replace("-", "_")


def load_cms_credentials(
    site_key: str,
    environ: Mapping[str, str] | None = None,
    *,
    staging_only: bool = False,
) -> CmsCredentials:
    """Resolve WordPress credentials for ``site_key`` from the environment.

    Expects ``<PREFIX>_URL``, ``<PREFIX>_USER`` and ``<PREFIX>_APP_PASSWORD``.
    When ``staging_only`` is set, a base URL without ``staging`` in it is refused.
    """

    env = os.environ if environ is None else environ
    prefix = site_env_prefix(site_key)
    names = (f"{prefix}_URL", f"{prefix}_USER", f"{prefix}_APP_PASSWORD")
    values: list[Optional[str]] = []
    for name in names:
        raw = env.get(name)
        values.append(raw.strip() if raw and raw.strip() else None)

    missing = [name for name, value in zip(names, values) if value is None]
    if missing:
        raise ConfigurationError(
            f"Missing CMS credentials for site {site_key!r}. Expected env vars: {', '.join(names)} "
            f"(missing: {', '.join(missing)})"
        )

    url, user, password = values
    base_url = str(url).rstrip("/")
    if staging_only and "staging" not in base_url:
        raise ConfigurationError(
            f"Refusing to publish: URL for {site_key!r} does not contain 'staging' ({base_url})"
        )

    return CmsCredentials(
        site_key=site_key,
        base_url=base_url,
        username=str(user),
        app_password=str(password),
    )
