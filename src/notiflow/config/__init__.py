"""Configuration subsystem for notiflow.

Public API::

    from notiflow.config import get_config, NotiflowConfig

    # At startup (CLI only):
    NotiflowConfig(config_file="config.yaml")

    # Everywhere else:
    cfg = get_config()
    main_queue = cfg.settings.queues.main  # typed access
"""

from notiflow.config.notiflow_config import (
    ConfigValidationError,
    NotiflowConfig,
    get_config,
)
from notiflow.config.settings import (
    BrokerSettings,
    CallbackSettings,
    DatabaseSettings,
    DeliverySettings,
    LoggingSettings,
    NotiflowSettings,
    QueueSettings,
    RetentionSettings,
    SmtpSettings,
)

__all__ = [
    "BrokerSettings",
    "CallbackSettings",
    "ConfigValidationError",
    "DatabaseSettings",
    "DeliverySettings",
    "LoggingSettings",
    "NotiflowConfig",
    "NotiflowSettings",
    "QueueSettings",
    "RetentionSettings",
    "SmtpSettings",
    "get_config",
]
