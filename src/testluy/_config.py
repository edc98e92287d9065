"""
Configuration loading for the testluy SDK.

This is the only module of the SDK that reads environment variables. It turns
defaults, `TESTLUY_*` environment variables and explicit overrides into one
immutable, validated `TestluyConfig` struct, which is then handed to
`TestluyClient` at construction. The client itself never looks at the
environment.

Hierarchy of precedence (highest to lowest):
1. Overrides passed to load_config()
2. Environment variables (TESTLUY_*) - when allow_env_override=True
3. Hardcoded defaults (in dataclass fields)

Example:
    >>> from testluy import TestluyClient, load_config
    >>>
    >>> config = load_config(
    ...     auth={"client_id": "x", "secret_key": "y"},
    ...     retry={"max_retries": 5},
    ... )
    >>> client = TestluyClient(config)
"""

from __future__ import annotations

import os
from collections.abc import Callable
from dataclasses import dataclass, field, fields, replace
from typing import Any, Self

from testluy._errors import ConfigurationError

# =============================================================================
# Exceptions
# =============================================================================


class ConfigEnvVarError(ConfigurationError):
    """Raised when a TESTLUY_* variable cannot be converted to its field type."""

    def __init__(
        self,
        env_var: str,
        value: str,
        expected_type: str,
        cause: Exception | None = None,
    ):
        self.env_var = env_var
        self.value = value
        self.expected_type = expected_type
        super().__init__(f"Invalid value for {env_var}: '{value}' (expected {expected_type})")
        self.__cause__ = cause


class ConfigValidationError(ConfigurationError):
    """Raised when a section value is out of range or malformed."""

    def __init__(
        self,
        field: str,
        value: Any,
        message: str,
        section: str | None = None,
    ):
        self.field = field
        self.value = value
        self.section = section
        prefix = f"[{section}] " if section else ""
        super().__init__(f"{prefix}Invalid value for '{field}': {value!r}. {message}")


# =============================================================================
# Environment Variables
# =============================================================================


class EnvVars:
    """
    Typed access to TESTLUY_* environment variables.

    Example:
        >>> EnvVars.get("TESTLUY_REQUEST_TIMEOUT", type_hint=float)
        30.0
        >>> EnvVars.get("TESTLUY_CLIENT_ID")
        'my-client-id'
        >>> EnvVars.get("UNDEFINED_VAR")
        None
    """

    @staticmethod
    def get(
        var_name: str,
        type_hint: Any = str,
        converter: Callable[[str], Any] | None = None,
    ) -> Any:
        """
        Read one environment variable and convert it to the field type.

        Args:
            var_name: Name of the variable (e.g. "TESTLUY_RETRY_MAX_RETRIES").
            type_hint: Field type; picks int, float, bool or str conversion.
            converter: Explicit converter, used instead of the type_hint one.

        Returns:
            The converted value, or None when the variable is unset or blank.

        Raises:
            ConfigEnvVarError: If the raw text does not convert.
        """
        raw_value = os.environ.get(var_name)
        if not raw_value:  # None or empty string
            return None

        actual_converter = converter or EnvVars._infer_converter(type_hint)
        try:
            return actual_converter(raw_value)
        except (ValueError, TypeError) as e:
            raise ConfigEnvVarError(
                env_var=var_name,
                value=raw_value,
                expected_type=type_hint.__name__ if hasattr(type_hint, "__name__") else str(type_hint),
                cause=e,
            ) from e

    @staticmethod
    def _infer_converter(type_hint: Any) -> Callable[[str], Any]:
        """
        Pick a converter for a field type.

        Field types are strings here (postponed annotations), so both forms
        are accepted.
        """
        type_str = str(type_hint)

        if type_hint is int or type_str == "int":
            return int
        if type_hint is float or type_str == "float":
            return float
        if type_hint is bool or type_str == "bool":
            return lambda v: v.lower() in ("true", "1", "yes")
        return str


# =============================================================================
# Base Class
# =============================================================================


@dataclass(frozen=True)
class OverridableConfig:
    """
    Base class for immutable configuration sections.

    Provides `.with_overrides()` for partial updates with strict field-name
    checking, and `.with_env_vars()` driven by the `env` key of field metadata.

    Example:
        >>> config = RetryConfig()
        >>> custom = config.with_overrides({"max_retries": 5})
        >>> custom.max_retries
        5
    """

    def with_overrides(self, overrides: dict[str, Any]) -> Self:
        """
        Copy this section with some fields replaced.

        None values are ignored, so partially-filled dicts can be passed as is.

        Raises:
            ValueError: If a key is not a field of this section.
        """
        if not overrides:
            return self

        valid_fields = {f.name for f in fields(self)}
        invalid_fields = set(overrides.keys()) - valid_fields

        if invalid_fields:
            raise ValueError(
                f"Unknown config fields: {invalid_fields}. "
                f"Valid fields are: {valid_fields}"
            )

        filtered = {k: v for k, v in overrides.items() if v is not None}
        return replace(self, **filtered) if filtered else self

    def env_overrides(self) -> dict[str, Any]:
        """
        Read the environment variables declared in field metadata.

        Returns:
            Dict of field name to converted value, for env vars that are set.

        Raises:
            ConfigEnvVarError: If an env var has an invalid value.
        """
        overrides: dict[str, Any] = {}
        for f in fields(self):
            env_var = f.metadata.get("env")
            if env_var:
                value = EnvVars.get(var_name=env_var, type_hint=f.type)
                if value is not None:
                    overrides[f.name] = value
        return overrides

    def with_env_vars(self) -> Self:
        """Return new instance with environment variables applied."""
        return self.with_overrides(self.env_overrides())

    @classmethod
    def env_var_for(cls, name: str) -> str | None:
        """Return the env var bound to a field, if any."""
        for f in fields(cls):
            if f.name == name:
                return f.metadata.get("env")
        return None


def _is_http_url(value: str) -> bool:
    return value.startswith("http://") or value.startswith("https://")


# =============================================================================
# Configuration Sections
# =============================================================================


@dataclass(frozen=True)
class AuthConfig(OverridableConfig):
    """
    Credentials used to sign requests.

    Attributes:
        client_id: TestLuy client identifier (sent as X-Client-ID).
            Env var: TESTLUY_CLIENT_ID

        secret_key: Shared secret used for the HMAC signature. Never sent.
            Env var: TESTLUY_SECRET_KEY
    """

    client_id: str | None = field(default=None, metadata={"env": "TESTLUY_CLIENT_ID"})
    secret_key: str | None = field(default=None, metadata={"env": "TESTLUY_SECRET_KEY"}, repr=False)

    def has_credentials(self) -> bool:
        """Check if both client_id and secret_key are set."""
        return bool(self.client_id and self.client_id.strip() and self.secret_key and self.secret_key.strip())

    def validate(self) -> Self:
        """Validate auth configuration fields."""
        if self.client_id is not None and not self.client_id.strip():
            raise ConfigValidationError(
                "client_id", self.client_id,
                "Must not be empty string.", section="auth"
            )
        if self.secret_key is not None and not self.secret_key.strip():
            raise ConfigValidationError(
                "secret_key", "********",
                "Must not be empty string.", section="auth"
            )
        return self


@dataclass(frozen=True)
class ApiConfig(OverridableConfig):
    """
    Where and how requests are sent.

    Attributes:
        base_url: Base URL of the TestLuy API.
            Env var: TESTLUY_BASE_URL

        path_prefix: Prefix joined in front of every operation path (and
            covered by the signature). Use "" for hosts that serve the API
            at the root.
            Env var: TESTLUY_PATH_PREFIX

        request_timeout: HTTP request timeout in seconds. Exceeding it is
            treated as a transient failure.
            Env var: TESTLUY_REQUEST_TIMEOUT

        preemptive_backoff: Wait for the rate-limit window to reset before
            sending when the last response reported no requests left.
            Env var: TESTLUY_PREEMPTIVE_BACKOFF
    """

    base_url: str = field(default="https://api-testluy.paragoniu.app", metadata={"env": "TESTLUY_BASE_URL"})
    path_prefix: str = field(default="api", metadata={"env": "TESTLUY_PATH_PREFIX"})
    request_timeout: float = field(default=30.0, metadata={"env": "TESTLUY_REQUEST_TIMEOUT"})
    preemptive_backoff: bool = field(default=False, metadata={"env": "TESTLUY_PREEMPTIVE_BACKOFF"})

    def validate(self) -> Self:
        """Validate API configuration fields."""
        if not self.base_url or not _is_http_url(self.base_url):
            raise ConfigValidationError(
                "base_url", self.base_url,
                "Must start with 'http://' or 'https://'.", section="api"
            )
        if self.request_timeout <= 0:
            raise ConfigValidationError(
                "request_timeout", self.request_timeout,
                "Must be greater than 0.", section="api"
            )
        return self


@dataclass(frozen=True)
class RetryConfig(OverridableConfig):
    """
    Bounds of the retry policy.

    Attributes:
        max_retries: Maximum retry attempts. 0 disables retries (single
            attempt); 3 means 4 attempts in total.
            Env var: TESTLUY_RETRY_MAX_RETRIES

        base_delay: Delay in seconds before the first retry.
            Env var: TESTLUY_RETRY_BASE_DELAY

        max_delay: Upper bound in seconds of the computed backoff.
            Env var: TESTLUY_RETRY_MAX_DELAY

        backoff_factor: Multiplier applied per attempt (delay doubles with 2.0).
            Env var: TESTLUY_RETRY_BACKOFF_FACTOR

        jitter_factor: Random variation applied to each delay (0.2 = +/-20%).
            Env var: TESTLUY_RETRY_JITTER_FACTOR

        max_retry_after: Largest server Retry-After (seconds) the SDK agrees
            to wait. Longer requests surface the error instead.
            Env var: TESTLUY_RETRY_MAX_RETRY_AFTER
    """

    max_retries: int = field(default=3, metadata={"env": "TESTLUY_RETRY_MAX_RETRIES"})
    base_delay: float = field(default=1.0, metadata={"env": "TESTLUY_RETRY_BASE_DELAY"})
    max_delay: float = field(default=10.0, metadata={"env": "TESTLUY_RETRY_MAX_DELAY"})
    backoff_factor: float = field(default=2.0, metadata={"env": "TESTLUY_RETRY_BACKOFF_FACTOR"})
    jitter_factor: float = field(default=0.2, metadata={"env": "TESTLUY_RETRY_JITTER_FACTOR"})
    max_retry_after: float = field(default=60.0, metadata={"env": "TESTLUY_RETRY_MAX_RETRY_AFTER"})

    def validate(self) -> Self:
        """Validate retry configuration fields."""
        if self.max_retries < 0:
            raise ConfigValidationError(
                "max_retries", self.max_retries,
                "Must be >= 0.", section="retry"
            )
        if self.base_delay < 0:
            raise ConfigValidationError(
                "base_delay", self.base_delay,
                "Must be >= 0.", section="retry"
            )
        if self.max_delay < self.base_delay:
            raise ConfigValidationError(
                "max_delay", self.max_delay,
                f"Must be >= base_delay ({self.base_delay}).", section="retry"
            )
        if self.backoff_factor < 1:
            raise ConfigValidationError(
                "backoff_factor", self.backoff_factor,
                "Must be >= 1.", section="retry"
            )
        if self.jitter_factor < 0 or self.jitter_factor >= 1:
            raise ConfigValidationError(
                "jitter_factor", self.jitter_factor,
                "Must be >= 0 and less than 1.", section="retry"
            )
        if self.max_retry_after <= 0:
            raise ConfigValidationError(
                "max_retry_after", self.max_retry_after,
                "Must be greater than 0.", section="retry"
            )
        return self


# =============================================================================
# Root Configuration
# =============================================================================


@dataclass(frozen=True)
class ConfigEntry:
    """
    One resolved field of a section, with where its value came from.

    Attributes:
        name: The field name (e.g., "request_timeout").
        value: The resolved value.
        source: "default", "env:VAR_NAME" or "override".

    Example:
        >>> ConfigEntry("secret_key", "super-secret-key", "override").formatted_value
        'supe********-key'
    """

    name: str
    value: Any
    source: str

    @property
    def formatted_value(self) -> str:
        """Return value formatted for display, masking secrets."""
        if self.name == "secret_key" and self.value is not None:
            return mask_secret(str(self.value))
        if self.value is None:
            return "None"
        return str(self.value)


def mask_secret(secret: str) -> str:
    """
    Mask a sensitive value for display.

    Long values keep their first and last 4 characters; short ones only
    reveal their last third.
    """
    if len(secret) >= 12:
        return f"{secret[:4]}********{secret[-4:]}"
    if len(secret) >= 3:
        visible = max(1, len(secret) // 3)
        return f"********{secret[-visible:]}"
    return "********"


_SECTIONS = ("auth", "api", "retry")


@dataclass(frozen=True)
class TestluyConfig:
    """
    Root configuration struct consumed by TestluyClient.

    Attributes:
        auth: Credentials.
        api: Endpoint, path prefix and timeout.
        retry: Retry policy bounds.
        sources: Where each field value came from, per section
            (used by explain_data()).
    """

    __test__ = False  # not a pytest test class

    auth: AuthConfig = field(default_factory=AuthConfig)
    api: ApiConfig = field(default_factory=ApiConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    sources: dict[str, dict[str, str]] = field(default_factory=dict, repr=False, compare=False)

    def with_env_vars(self) -> TestluyConfig:
        """Return a new config with TESTLUY_* environment variables applied."""
        return self._with_layer(
            {name: getattr(self, name).env_overrides() for name in _SECTIONS},
            source_of=lambda section, name: f"env:{type(getattr(self, section)).env_var_for(name)}",
        )

    def with_section_overrides(
        self,
        *,
        auth: dict[str, Any] | None = None,
        api: dict[str, Any] | None = None,
        retry: dict[str, Any] | None = None,
    ) -> TestluyConfig:
        """
        Return a new config with overrides applied to nested sections.

        Example:
            >>> config = TestluyConfig().with_section_overrides(
            ...     api={"request_timeout": 10},
            ...     retry={"max_retries": 0},
            ... )
        """
        return self._with_layer(
            {"auth": auth or {}, "api": api or {}, "retry": retry or {}},
            source_of=lambda section, name: "override",
        )

    def _with_layer(
        self,
        layer: dict[str, dict[str, Any]],
        source_of: Callable[[str, str], str],
    ) -> TestluyConfig:
        sources = {section: dict(self.sources.get(section, {})) for section in _SECTIONS}
        for section, overrides in layer.items():
            for name, value in overrides.items():
                if value is not None:
                    sources[section][name] = source_of(section, name)
        return TestluyConfig(
            auth=self.auth.with_overrides(layer.get("auth", {})),
            api=self.api.with_overrides(layer.get("api", {})),
            retry=self.retry.with_overrides(layer.get("retry", {})),
            sources=sources,
        )

    def validate(self) -> TestluyConfig:
        """
        Validate all sections.

        Raises:
            ConfigValidationError: If any config value is invalid.
        """
        self.auth.validate()
        self.api.validate()
        self.retry.validate()
        return self

    def explain_data(self) -> dict[str, list[ConfigEntry]]:
        """
        Return config values and their sources, per section.

        Example:
            >>> for entry in load_config().explain_data()["retry"]:
            ...     print(f"{entry.name}: {entry.formatted_value} ({entry.source})")
            max_retries: 3 (default)
            ...
        """
        result: dict[str, list[ConfigEntry]] = {}
        for section_name in _SECTIONS:
            section_config = getattr(self, section_name)
            section_sources = self.sources.get(section_name, {})
            result[section_name] = [
                ConfigEntry(
                    name=f.name,
                    value=getattr(section_config, f.name),
                    source=section_sources.get(f.name, "default"),
                )
                for f in fields(section_config)
            ]
        return result


def load_config(
    *,
    auth: dict[str, Any] | None = None,
    api: dict[str, Any] | None = None,
    retry: dict[str, Any] | None = None,
    allow_env_override: bool = True,
) -> TestluyConfig:
    """
    Build a validated configuration struct.

    Args:
        auth: Credential overrides (client_id, secret_key).
        api: API overrides (base_url, path_prefix, request_timeout, preemptive_backoff).
        retry: Retry overrides (max_retries, base_delay, max_delay, ...).
        allow_env_override: If True (default), TESTLUY_* env vars fill the
            fields NOT provided explicitly. If False, env vars are ignored.

    Returns:
        The validated TestluyConfig.

    Raises:
        ValueError: If any dict contains unknown field names.
        ConfigEnvVarError: If an env var cannot be converted.
        ConfigValidationError: If any config value fails validation.
    """
    base = TestluyConfig()
    if allow_env_override:
        base = base.with_env_vars()

    config = base.with_section_overrides(auth=auth, api=api, retry=retry)
    return config.validate()
