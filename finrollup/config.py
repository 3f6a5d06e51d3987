"""
Centralized configuration for the fundraising rollup engine.

This module provides a single source of truth for all configuration values.
Configuration is loaded from environment variables with sensible defaults.

Usage:
    from finrollup.config import config

    tz = config.rollup.timezone_for(org_id)
    cap = config.source.max_transaction_rows
"""

import os
from dataclasses import dataclass, field
from typing import Dict, List, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dotenv import load_dotenv

# Load environment variables
load_dotenv()


def _parse_pairs(raw: str) -> Dict[str, str]:
    """Parse a 'key=value,key=value' environment string into a dict."""
    pairs = {}
    for chunk in raw.split(","):
        if "=" not in chunk:
            continue
        key, value = chunk.split("=", 1)
        key, value = key.strip(), value.strip()
        if key and value:
            pairs[key] = value
    return pairs


@dataclass(frozen=True)
class SourceConfig:
    """Hosted data source (PostgREST) configuration."""

    base_url: str = field(default_factory=lambda: os.getenv("ROLLUP_SOURCE_URL", ""))
    api_key: str = field(default_factory=lambda: os.getenv("ROLLUP_SOURCE_KEY", ""))
    request_timeout: float = 30.0

    # Raw transaction reads are capped; a result at the cap may be incomplete
    max_transaction_rows: int = field(
        default_factory=lambda: int(os.getenv("MAX_TRANSACTION_ROWS", "2000"))
    )
    page_size: int = 1000


@dataclass(frozen=True)
class RollupConfig:
    """Day bucketing and rollup configuration."""

    default_timezone: str = field(
        default_factory=lambda: os.getenv("DEFAULT_ORG_TIMEZONE", "America/New_York")
    )

    # Per-organization overrides: ORG_TIMEZONES="org-1=America/Chicago,org-2=UTC"
    org_timezones: Dict[str, str] = field(
        default_factory=lambda: _parse_pairs(os.getenv("ORG_TIMEZONES", ""))
    )

    # Tolerance for summed-float comparisons (daily vs period, fallback vs canonical)
    sum_tolerance: float = 1e-6

    max_range_days: int = 366

    def timezone_for(self, organization_id: str) -> str:
        """Get the bucketing timezone for an organization."""
        return self.org_timezones.get(organization_id, self.default_timezone)


@dataclass(frozen=True)
class AttributionConfig:
    """Attribution rule configuration."""

    # Referral code prefixes per channel (checked in this order)
    refcode_prefixes: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
        ("meta", ("jp", "th", "meta_", "fb_", "ig_", "facebook_", "instagram_")),
        ("sms", ("txt", "sms", "text_")),
        ("other", ("em", "email", "mail_", "newsletter")),
    )

    # Contribution form markers of known SMS vendors
    sms_form_markers: Tuple[str, ...] = ("sms",)

    # Contribution forms built for email appeals
    email_form_markers: Tuple[str, ...] = ("email",)
    email_form_prefixes: Tuple[str, ...] = ("em_",)

    # Explicit refcode -> platform mapping: REFCODE_PLATFORMS="abc=meta,spring24=sms"
    refcode_platforms: Dict[str, str] = field(
        default_factory=lambda: {
            code.lower(): platform.lower()
            for code, platform in _parse_pairs(os.getenv("REFCODE_PLATFORMS", "")).items()
        }
    )


@dataclass(frozen=True)
class LoggingConfig:
    """Logging configuration."""

    level: str = field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO"))
    json_format: bool = field(
        default_factory=lambda: os.getenv("LOG_JSON", "").lower() in ("1", "true", "yes")
    )


@dataclass(frozen=True)
class AppConfig:
    """Main application configuration."""

    version: str = "0.4.0"
    source: SourceConfig = field(default_factory=SourceConfig)
    rollup: RollupConfig = field(default_factory=RollupConfig)
    attribution: AttributionConfig = field(default_factory=AttributionConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


# Global config instance
config = AppConfig()


# ─── Convenience Exports ──────────────────────────────────────────────────────
VERSION = config.version
DEFAULT_TIMEZONE = config.rollup.default_timezone
MAX_TRANSACTION_ROWS = config.source.max_transaction_rows
SUM_TOLERANCE = config.rollup.sum_tolerance


class ConfigurationError(Exception):
    """Raised when required configuration is missing or invalid."""
    pass


def _is_known_zone(name: str) -> bool:
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        return False
    return True


def validate_config(settings: AppConfig = config, require_source: bool = True) -> None:
    """
    Validate that all required configuration is present.

    Call this on startup to fail fast with clear error messages
    instead of cryptic runtime failures.

    Args:
        settings: Configuration to validate (default: global config)
        require_source: If True, validate hosted source URL and key

    Raises:
        ConfigurationError: If required configuration is missing
    """
    errors: List[str] = []

    if require_source and not settings.source.base_url:
        errors.append("ROLLUP_SOURCE_URL is required but not set")

    if require_source and not settings.source.api_key:
        errors.append("ROLLUP_SOURCE_KEY is required but not set")

    if settings.source.max_transaction_rows <= 0:
        errors.append("MAX_TRANSACTION_ROWS must be a positive integer")

    if not _is_known_zone(settings.rollup.default_timezone):
        errors.append(
            f"DEFAULT_ORG_TIMEZONE '{settings.rollup.default_timezone}' is not a known IANA timezone"
        )

    for org_id, zone in settings.rollup.org_timezones.items():
        if not _is_known_zone(zone):
            errors.append(f"ORG_TIMEZONES entry for '{org_id}' has unknown timezone '{zone}'")

    if errors:
        error_msg = "Configuration validation failed:\n" + "\n".join(f"  - {e}" for e in errors)
        raise ConfigurationError(error_msg)
