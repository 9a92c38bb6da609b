"""notiflow configuration loader built on ConfigKit.

Lifecycle::

    # 1. CLI creates the singleton (once, at startup)
    NotiflowConfig(config_file="/etc/notiflow/config.yaml")

    # 2. Any module retrieves it afterwards
    from notiflow.config import get_config
    cfg = get_config()
    cfg.settings.queues.main  # typed access

    # 3. Dynamic access
    cfg.get("broker.url", default="amqp://localhost")
"""

from __future__ import annotations

import logging
import os
import re
from pathlib import Path
from typing import Any

from configkit import ConfigKit, ConfigKitMeta

from notiflow.config.settings import NotiflowSettings, build_settings

_SCHEMA_PATH = Path(__file__).parent / "schema.json"

_ENV_RE = re.compile(
    r"^\$\{([^}:]+?)(?::-(.*))?\}$",
    re.DOTALL,
)

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Module-level singleton reference
# ---------------------------------------------------------------------------
_instance: NotiflowConfig | None = None


def get_config() -> NotiflowConfig:
    """Return the initialised configuration singleton.

    Raises :class:`RuntimeError` if :class:`NotiflowConfig` has not been
    created yet (i.e. the CLI entry point has not run).
    """
    if _instance is None:
        msg = (
            "Configuration not initialised. "
            "NotiflowConfig must be created with config_file= before calling get_config()."
        )
        raise RuntimeError(msg)
    return _instance


# ---------------------------------------------------------------------------
# Validation error collector
# ---------------------------------------------------------------------------


class ConfigValidationError(Exception):
    """Raised when cross-field validation finds one or more problems."""

    def __init__(self, errors: list[str]) -> None:
        self.errors = errors
        body = "\n".join(f"  - {e}" for e in errors)
        super().__init__(f"Configuration validation failed:\n{body}")


# ---------------------------------------------------------------------------
# Environment variable resolution
# ---------------------------------------------------------------------------


def _resolve_value(value: str, path: str) -> str:
    """Replace ``${VAR}`` or ``${VAR:-default}`` with env var value."""
    match = _ENV_RE.match(value)
    if match is None:
        return value
    var_name = match.group(1)
    fallback = match.group(2)
    resolved = os.environ.get(var_name)
    if resolved is not None:
        return resolved
    if fallback is not None:
        return fallback
    raise ConfigValidationError(
        [
            f"Environment variable '${{{var_name}}}' referenced "
            f"at '{path}' is not set and has no default",
        ],
    )


def _resolve_env_vars(
    data: Any,  # noqa: ANN401
    path: str = "",
) -> None:
    """Walk *data* in-place and resolve ``${VAR}``/``${VAR:-default}`` strings."""
    if isinstance(data, dict):
        for key in data:
            child_path = f"{path}.{key}" if path else key
            if isinstance(data[key], str):
                data[key] = _resolve_value(data[key], child_path)
            elif isinstance(data[key], (dict, list)):
                _resolve_env_vars(data[key], child_path)
    elif isinstance(data, list):
        for idx, item in enumerate(data):
            child_path = f"{path}[{idx}]"
            if isinstance(item, str):
                data[idx] = _resolve_value(item, child_path)
            elif isinstance(item, (dict, list)):
                _resolve_env_vars(item, child_path)


# ---------------------------------------------------------------------------
# Config class
# ---------------------------------------------------------------------------


class NotiflowConfig(ConfigKit):
    """Central configuration for the notiflow producer and worker.

    Subclasses :class:`configkit.ConfigKit`.  The JSON schema is
    bundled at ``config/schema.json``; users supply only ``config_file``.
    """

    def __init__(
        self,
        *,
        config_file: str | Path,
        schema_file: str | Path | None = None,  # noqa: ARG002
    ) -> None:
        global _instance  # noqa: PLW0603

        # The bundled schema always wins; schema_file only satisfies
        # ConfigKitMeta's __call__ guard.
        super().__init__(
            config_file=config_file,
            schema_file=_SCHEMA_PATH,
        )

        self._settings: NotiflowSettings = build_settings(self.data)
        _instance = self

    # -- lifecycle overrides ------------------------------------------------

    def _load(self) -> None:
        """Load config file then resolve ``${VAR}`` env-var references.

        Runs before schema validation so substituted values are checked
        against the schema's type constraints.
        """
        super()._load()
        _resolve_env_vars(self._data)

    # -- typed access -------------------------------------------------------

    @property
    def settings(self) -> NotiflowSettings:
        """Fully-typed, frozen settings tree."""
        return self._settings

    # -- cross-field validation ---------------------------------------------

    def additional_checks(self) -> None:
        """Semantic & cross-field validation.

        Called automatically by ConfigKit **after** schema validation
        passes.
        """
        errors: list[str] = []
        warnings: list[str] = []

        smtp = self.data.get("smtp") or {}
        queues = self.data.get("queues") or {}
        delivery = self.data.get("delivery") or {}
        callback = self.data.get("callback") or {}
        db = self.data.get("database") or {}

        # -- SMTP --
        if smtp.get("enabled"):
            if not smtp.get("host"):
                errors.append("smtp.host is required when smtp.enabled is true")
            if not smtp.get("from_address"):
                errors.append(
                    "smtp.from_address is required when smtp.enabled is true",
                )
        else:
            warnings.append(
                "smtp.enabled is false: jobs will be marked SENT without sending mail",
            )

        # -- Queues --
        names = {
            "queues.main": queues.get("main", "email_queue"),
            "queues.retry": queues.get("retry", "email_retry_queue"),
            "queues.dead_letter": queues.get("dead_letter", "email_dlq"),
        }
        seen: dict[str, str] = {}
        for key, name in names.items():
            if name in seen:
                errors.append(f"{key} must differ from {seen[name]} (both '{name}')")
            seen.setdefault(name, key)

        # -- Delivery --
        if delivery.get("max_retries", 3) < 0:
            errors.append("delivery.max_retries must be >= 0")
        base_delay = delivery.get("retry_base_delay_seconds", 5)
        max_delay = delivery.get("retry_max_delay_seconds", 300)
        if base_delay > max_delay:
            errors.append(
                f"delivery.retry_base_delay_seconds ({base_delay}) must be <= "
                f"delivery.retry_max_delay_seconds ({max_delay})",
            )
        if delivery.get("prefetch_count", 1) != 1:
            warnings.append(
                "delivery.prefetch_count is not 1: a worker instance will hold "
                "more than one unacknowledged delivery at a time",
            )

        # -- Callback --
        if callback.get("timeout_seconds", 5.0) > 30:
            warnings.append(
                "callback.timeout_seconds exceeds 30s: a slow callback endpoint "
                "delays acknowledgement of the current job",
            )

        # -- Database --
        min_conn = db.get("min_connections", 2)
        max_conn = db.get("max_connections", 10)
        if min_conn > max_conn:
            errors.append(
                f"database.min_connections ({min_conn}) must be <= "
                f"database.max_connections ({max_conn})",
            )

        for w in warnings:
            log.warning("Config warning: %s", w)

        if errors:
            raise ConfigValidationError(errors)

    # -- helpers ------------------------------------------------------------

    @classmethod
    def reset(cls) -> None:
        """Reset the singleton -- testing only."""
        global _instance  # noqa: PLW0603
        _instance = None
        ConfigKitMeta.reset()

    def __repr__(self) -> str:
        source = self.data.get("_source", "?")
        return f"<NotiflowConfig config_file={source}>"
