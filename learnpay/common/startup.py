"""Startup-time helpers for safe config logging."""

from learnpay.common.config import CommonSettings
from learnpay.common.logging import logger


SECRET_MARKERS = ("key", "secret", "password", "token", "dsn")


def redacted_settings(config: CommonSettings, fields: list[str]) -> dict[str, object]:
    """Return the chosen settings with secret-looking values masked.

    Empty secrets are reported as `<unset>` so a missing gateway key is visible
    in the startup log without leaking configured ones.
    """

    values = config.model_dump()
    shown: dict[str, object] = {}
    for name in fields:
        value = values.get(name)
        if value in (None, ""):
            shown[name] = "<unset>"
        elif any(marker in name for marker in SECRET_MARKERS):
            shown[name] = "<redacted>"
        else:
            shown[name] = value
    return shown


def log_startup_config(config: CommonSettings, fields: list[str]) -> None:
    """Log selected startup config fields for quick troubleshooting."""

    logger.info("startup_config service=%s config=%s", config.service_name, redacted_settings(config, fields))
