"""Runtime configuration for the E2EE core.

Settings are read from environment variables. A ``.env`` file in the working
directory is loaded first when present so secrets such as ``SENTRY_DSN`` stay
out of source control. Invalid values raise :class:`ValueError` immediately so
a misconfigured process fails at start-up rather than on first use.

Example usage::

    from e2ee.config import Settings, init_error_reporting

    settings = Settings.from_env()
    init_error_reporting(settings)
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

import sentry_sdk
from dotenv import find_dotenv, load_dotenv

from .channel_state import decode_enabled_flag

#: Smallest RSA modulus accepted for identity keys.
MIN_RSA_KEY_SIZE = 2048
#: PBKDF2 iteration floor for recovery-code key derivation.
MIN_PBKDF2_ITERATIONS = 100_000
#: Recovery codes shorter than this are rejected.
MIN_RECOVERY_WORDS = 8


def _read_env_int(name: str, default: int, minimum: int) -> int:
    """Return an integer from ``name`` or ``default``.

    Raises ``ValueError`` when the value is not an integer or falls below
    ``minimum``.
    """

    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    try:
        result = int(value)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer") from exc
    if result < minimum:
        raise ValueError(f"{name} must be >= {minimum}")
    return result


def _read_env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    try:
        result = float(value)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number") from exc
    if result <= 0:
        raise ValueError(f"{name} must be > 0")
    return result


def _read_env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return decode_enabled_flag(value)
    except ValueError as exc:
        raise ValueError(f"{name} must be a boolean literal") from exc


@dataclass(frozen=True)
class Settings:
    """Immutable bag of configuration values used across the package."""

    rsa_key_size: int = 4096
    pbkdf2_iterations: int = MIN_PBKDF2_ITERATIONS
    recovery_words: int = MIN_RECOVERY_WORDS
    recovery_separator: str = "-"
    remember_recovery_code: bool = False
    keystore_service: str = "channel_e2ee"
    directory_url: Optional[str] = None
    http_timeout: float = 10.0
    sentry_dsn: Optional[str] = None

    def __post_init__(self) -> None:
        if self.rsa_key_size < MIN_RSA_KEY_SIZE:
            raise ValueError(f"rsa_key_size must be >= {MIN_RSA_KEY_SIZE}")
        if self.pbkdf2_iterations < MIN_PBKDF2_ITERATIONS:
            raise ValueError(
                f"pbkdf2_iterations must be >= {MIN_PBKDF2_ITERATIONS}"
            )
        if self.recovery_words < MIN_RECOVERY_WORDS:
            raise ValueError(f"recovery_words must be >= {MIN_RECOVERY_WORDS}")
        if not self.recovery_separator or self.recovery_separator.isalpha():
            raise ValueError("recovery_separator must be a non-letter string")

    @classmethod
    def from_env(cls, *, dotenv: bool = True) -> "Settings":
        """Build settings from the process environment.

        Parameters
        ----------
        dotenv:
            When ``True`` (the default) a ``.env`` file is loaded first. Values
            already present in the environment take precedence.
        """

        if dotenv:
            load_dotenv(find_dotenv(usecwd=True))

        return cls(
            rsa_key_size=_read_env_int("E2EE_RSA_KEY_SIZE", 4096, MIN_RSA_KEY_SIZE),
            pbkdf2_iterations=_read_env_int(
                "E2EE_PBKDF2_ITERATIONS", MIN_PBKDF2_ITERATIONS, MIN_PBKDF2_ITERATIONS
            ),
            recovery_words=_read_env_int(
                "E2EE_RECOVERY_WORDS", MIN_RECOVERY_WORDS, MIN_RECOVERY_WORDS
            ),
            recovery_separator=os.environ.get("E2EE_RECOVERY_SEPARATOR", "-"),
            remember_recovery_code=_read_env_bool("E2EE_REMEMBER_RECOVERY_CODE", False),
            keystore_service=os.environ.get("E2EE_KEYSTORE_SERVICE", "channel_e2ee"),
            directory_url=os.environ.get("E2EE_DIRECTORY_URL") or None,
            http_timeout=_read_env_float("E2EE_HTTP_TIMEOUT", 10.0),
            sentry_dsn=os.environ.get("SENTRY_DSN") or None,
        )


def init_error_reporting(settings: Settings) -> bool:
    """Initialize Sentry when a DSN is configured.

    Returns ``True`` when Sentry was initialized. Without a DSN the
    ``sentry_sdk.capture_*`` calls made elsewhere in the package are no-ops.
    """

    if not settings.sentry_dsn:
        return False
    sentry_sdk.init(dsn=settings.sentry_dsn, traces_sample_rate=1.0)
    return True
