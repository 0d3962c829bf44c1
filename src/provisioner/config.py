"""Configuration management with validation.

Inputs are validated at construction time so a bad parameter fails the run
before any provider call is made.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ValidationError

from .retry import RetryPolicy

logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_MAX_ATTEMPTS = 3
MIN_MAX_ATTEMPTS = 1
MAX_MAX_ATTEMPTS = 10

DEFAULT_BASE_DELAY_SECONDS = 5.0
MAX_BASE_DELAY_SECONDS = 120.0

DEFAULT_OPERATION_TIMEOUT_SECONDS = 1800

DEFAULT_SETTINGS_PATH = "local.settings.json"
DEFAULT_SQL_SCRIPT_PATH = "database-setup.generated.sql"

DEFAULT_OPENAI_MODEL_NAME = "gpt-4.1"
DEFAULT_OPENAI_MODEL_VERSION = "2025-04-14"
DEFAULT_OPENAI_MODEL_CAPACITY = 50

DEFAULT_APIM_SKU = "Consumption"
DEFAULT_APIM_PUBLISHER_NAME = "AI Loan Agent"
DEFAULT_APIM_PUBLISHER_EMAIL = "admin@contoso.com"

MAX_CONFIG_FILE_SIZE_BYTES = 64 * 1024
MAX_RESOURCE_GROUP_NAME_LENGTH = 90
MAX_TAGS = 50

# Input validation patterns
VALID_SUBSCRIPTION_ID_PATTERN = r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$"
VALID_PROJECT_NAME_PATTERN = r"^[a-z][a-z0-9-]{1,14}[a-z0-9]$"
VALID_RESOURCE_GROUP_PATTERN = r"^[-\w._()]+$"
VALID_LOCATION_PATTERN = r"^[a-z]{2,}[a-z0-9]*$"
VALID_APIM_NAME_PATTERN = r"^[a-zA-Z][a-zA-Z0-9-]{0,48}[a-zA-Z0-9]$"
VALID_APIM_SKUS = ("Consumption", "Developer", "Basic", "Standard", "Premium")


@dataclass(frozen=True)
class Config:
    """Deployment configuration.

    Immutable for the run and passed explicitly to every component.
    """

    # Required fields
    subscription_id: str
    resource_group: str
    location: str
    project_name: str

    # Optional pre-existing gateway (skips APIM creation)
    existing_apim_name: str | None = None
    tags: dict[str, str] = field(default_factory=dict)

    # Output artifacts
    settings_path: Path = field(default_factory=lambda: Path(DEFAULT_SETTINGS_PATH))
    sql_script_path: Path = field(default_factory=lambda: Path(DEFAULT_SQL_SCRIPT_PATH))

    # Provider call behaviour
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    operation_timeout_seconds: int = DEFAULT_OPERATION_TIMEOUT_SECONDS

    # AI model
    openai_model_name: str = DEFAULT_OPENAI_MODEL_NAME
    openai_model_version: str = DEFAULT_OPENAI_MODEL_VERSION
    openai_model_capacity: int = DEFAULT_OPENAI_MODEL_CAPACITY

    # API gateway
    apim_sku: str = DEFAULT_APIM_SKU
    apim_publisher_name: str = DEFAULT_APIM_PUBLISHER_NAME
    apim_publisher_email: str = DEFAULT_APIM_PUBLISHER_EMAIL

    # SQL Entra ID administrator (defaults to the signed-in principal)
    sql_admin_object_id: str | None = None
    sql_admin_login: str | None = None

    # Behavior
    allow_timestamp_names: bool = False
    strict: bool = False

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not self.subscription_id:
            errors.append("AZURE_SUBSCRIPTION_ID is required")
        elif not re.match(VALID_SUBSCRIPTION_ID_PATTERN, self.subscription_id.lower()):
            errors.append(f"AZURE_SUBSCRIPTION_ID must be a valid GUID: {self.subscription_id}")

        if not self.resource_group:
            errors.append("RESOURCE_GROUP_NAME is required")
        elif len(self.resource_group) > MAX_RESOURCE_GROUP_NAME_LENGTH:
            errors.append(
                f"RESOURCE_GROUP_NAME exceeds maximum length of {MAX_RESOURCE_GROUP_NAME_LENGTH}"
            )
        elif not re.match(VALID_RESOURCE_GROUP_PATTERN, self.resource_group) or (
            self.resource_group.endswith(".")
        ):
            errors.append(f"RESOURCE_GROUP_NAME contains invalid characters: {self.resource_group}")

        if not self.location:
            errors.append("AZURE_LOCATION is required")
        elif not re.match(VALID_LOCATION_PATTERN, self.location.lower()):
            errors.append(f"AZURE_LOCATION must be a valid Azure region: {self.location}")

        if not self.project_name:
            errors.append("PROJECT_NAME is required")
        elif not re.match(VALID_PROJECT_NAME_PATTERN, self.project_name):
            errors.append(
                f"PROJECT_NAME must match pattern {VALID_PROJECT_NAME_PATTERN}: {self.project_name}"
            )

        if self.existing_apim_name and not re.match(
            VALID_APIM_NAME_PATTERN, self.existing_apim_name
        ):
            errors.append(f"Existing APIM name is not valid: {self.existing_apim_name}")

        if len(self.tags) > MAX_TAGS:
            errors.append(f"At most {MAX_TAGS} tags are allowed")

        if not (MIN_MAX_ATTEMPTS <= self.retry.max_attempts <= MAX_MAX_ATTEMPTS):
            errors.append(
                f"max attempts must be between {MIN_MAX_ATTEMPTS} and {MAX_MAX_ATTEMPTS}"
            )
        if not (0 <= self.retry.base_delay_seconds <= MAX_BASE_DELAY_SECONDS):
            errors.append(f"base delay must be between 0 and {MAX_BASE_DELAY_SECONDS} seconds")

        if self.operation_timeout_seconds < 60:
            errors.append("operation timeout must be at least 60 seconds")

        if self.openai_model_capacity < 1:
            errors.append("OpenAI model capacity must be at least 1")

        if self.apim_sku not in VALID_APIM_SKUS:
            errors.append(f"APIM sku must be one of {list(VALID_APIM_SKUS)}: {self.apim_sku}")

        if "@" not in self.apim_publisher_email:
            errors.append(f"APIM publisher email is not an address: {self.apim_publisher_email}")

        if bool(self.sql_admin_object_id) != bool(self.sql_admin_login):
            errors.append("SQL admin object id and login must be supplied together")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @property
    def seed(self) -> str:
        """Stable naming seed shared by every deterministic resource name."""
        return f"{self.subscription_id}-{self.resource_group}"

    @property
    def resource_group_id(self) -> str:
        return f"/subscriptions/{self.subscription_id}/resourceGroups/{self.resource_group}"

    @classmethod
    def from_env(cls, **overrides: Any) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            AZURE_SUBSCRIPTION_ID: Target Azure subscription
            RESOURCE_GROUP_NAME: Resource group to deploy into
            AZURE_LOCATION: Region for every resource
            PROJECT_NAME: Readable prefix for resource names
            EXISTING_APIM_NAME: Reuse this API Management service
            SETTINGS_PATH: Settings document path (default: local.settings.json)
            MAX_ATTEMPTS: Attempts per provider call (default: 3)
            RETRY_BASE_DELAY: Seconds before the first retry (default: 5)

        Keyword overrides win over the environment; ``None`` overrides are
        ignored so CLI options that were not given fall through.
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_float(key: str, default: float) -> float:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return float(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be a number: {value}") from e

        values: dict[str, Any] = {
            "subscription_id": os.environ.get("AZURE_SUBSCRIPTION_ID", ""),
            "resource_group": os.environ.get("RESOURCE_GROUP_NAME", ""),
            "location": os.environ.get("AZURE_LOCATION", ""),
            "project_name": os.environ.get("PROJECT_NAME", ""),
            "existing_apim_name": os.environ.get("EXISTING_APIM_NAME") or None,
            "settings_path": Path(os.environ.get("SETTINGS_PATH", DEFAULT_SETTINGS_PATH)),
            "max_attempts": get_int("MAX_ATTEMPTS", DEFAULT_MAX_ATTEMPTS),
            "base_delay_seconds": get_float("RETRY_BASE_DELAY", DEFAULT_BASE_DELAY_SECONDS),
        }
        values.update({k: v for k, v in overrides.items() if v is not None})

        retry = RetryPolicy(
            max_attempts=values.pop("max_attempts"),
            base_delay_seconds=values.pop("base_delay_seconds"),
        )
        for key in ("settings_path", "sql_script_path"):
            if key in values:
                values[key] = Path(values[key])

        unknown = sorted(set(values) - {f.name for f in fields(cls)})
        if unknown:
            raise ConfigurationError(f"Unknown configuration key(s): {', '.join(unknown)}")

        return cls(retry=retry, **values)


class ConfigFile(BaseModel):
    """Keys accepted in the YAML parameters file.

    Names match the Config fields; retry settings are flattened.
    """

    model_config = {"extra": "forbid"}

    subscription_id: str | None = None
    resource_group: str | None = None
    location: str | None = None
    project_name: str | None = None
    existing_apim_name: str | None = None
    tags: dict[str, str] | None = None
    settings_path: Path | None = None
    sql_script_path: Path | None = None
    max_attempts: int | None = None
    base_delay_seconds: float | None = None
    operation_timeout_seconds: int | None = None
    openai_model_name: str | None = None
    openai_model_version: str | None = None
    openai_model_capacity: int | None = None
    apim_sku: str | None = None
    apim_publisher_name: str | None = None
    apim_publisher_email: str | None = None
    sql_admin_object_id: str | None = None
    sql_admin_login: str | None = None
    allow_timestamp_names: bool | None = None
    strict: bool | None = None


def parse_tags(pairs: tuple[str, ...] | list[str]) -> dict[str, str]:
    """Parse ``key=value`` pairs into a tags mapping."""
    tags: dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key.strip():
            raise ConfigurationError(f"Tag must be in key=value form: {pair!r}")
        tags[key.strip()] = value.strip()
    return tags


def load_config_file(path: Path) -> dict[str, Any]:
    """Load deployment parameters from a YAML file.

    Keys use the Config field names (``project_name``, ``tags``, ...).
    """
    if not path.exists():
        raise ConfigurationError(f"Config file not found: {path}")

    file_size = path.stat().st_size
    if file_size > MAX_CONFIG_FILE_SIZE_BYTES:
        raise ConfigurationError(
            f"Config file too large: {file_size} bytes (max {MAX_CONFIG_FILE_SIZE_BYTES})"
        )

    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"Config file must contain a mapping: {path}")

    tags = data.get("tags")
    if tags is not None:
        if not isinstance(tags, dict):
            raise ConfigurationError("tags must be a mapping of strings")
        data["tags"] = {str(k): str(v) for k, v in tags.items()}

    try:
        parsed = ConfigFile.model_validate(data)
    except ValidationError as e:
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            errors.append(f"  - {loc}: {error['msg']}")
        raise ConfigurationError(f"Invalid config file {path}:\n" + "\n".join(errors)) from e

    values = parsed.model_dump(exclude_none=True)
    logger.info("Loaded config file", extra={"path": str(path), "keys": sorted(values)})
    return values
