"""structlog setup for the gateway.

Every event passes through two gateway-specific processors: the request
correlation id is attached, and credential, device and address fields are
masked before rendering. Environment knobs (read once at import):

``LOG_LEVEL``      minimum level, default INFO
``LOG_JSON``       JSON lines when true (default), console output otherwise
``LOG_MASK_IPS``   truncate client addresses to their network, default true
"""

from __future__ import annotations

import ipaddress
import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

REDACTED = "[redacted]"

# Substring match on the lowercased key
_CREDENTIAL_MARKERS = ("secret", "token", "totp", "cookie", "authorization", "password")
_FINGERPRINT_MARKER = "fingerprint"
_ADDRESS_KEYS = frozenset({"ip", "client_ip", "last_ip", "client"})
_LOGIN_KEYS = frozenset({"login", "username"})

FINGERPRINT_PREFIX = 8
IPV4_PREFIX = 24
IPV6_PREFIX = 48

_mask_ips = True


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Set the request correlation id, generating one when none is given."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


def mask_address(value: str) -> str:
    """Reduce an address to its network, e.g. ``203.0.113.7`` -> ``203.0.113.0/24``.

    Values that do not parse as an IP (test peers, hostnames) are fully redacted.
    """

    try:
        address = ipaddress.ip_address(value)
    except ValueError:
        return REDACTED
    prefix = IPV4_PREFIX if address.version == 4 else IPV6_PREFIX
    return str(ipaddress.ip_network(f"{address}/{prefix}", strict=False))


def _mask_value(key: str, value: str) -> str:
    lower_key = key.lower()
    if any(marker in lower_key for marker in _CREDENTIAL_MARKERS):
        return REDACTED
    if _FINGERPRINT_MARKER in lower_key:
        # A short prefix still lets operators correlate one device across lines
        return value[:FINGERPRINT_PREFIX] + "..." if len(value) > FINGERPRINT_PREFIX else REDACTED
    if lower_key in _LOGIN_KEYS:
        return value[:1] + "***" if value else value
    if _mask_ips and lower_key in _ADDRESS_KEYS:
        return mask_address(value)
    return value


def _redact_secrets(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    for key, value in list(event_dict.items()):
        if key != "event" and isinstance(value, str):
            event_dict[key] = _mask_value(key, value)
    return event_dict


def configure_logging(
    log_level: str = "INFO",
    json_output: bool = True,
    mask_ips: bool = True,
) -> None:
    global _mask_ips
    _mask_ips = mask_ips

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_correlation_id,
        _redact_secrets,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if json_output:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=False))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(
    log_level=os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", "true"),
    mask_ips=_env_flag("LOG_MASK_IPS", "true"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
