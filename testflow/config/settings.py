"""Typed settings for testflow.

Configuration classes for the issue tracker, source host,
AI provider, workflow engine, webhook intake and reward scoring.
"""

from __future__ import annotations

import os
import re
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, SecretStr, model_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from testflow.exceptions import ConfigurationError


class TrackerConfig(BaseModel):
    """Issue tracker (Jira) configuration.

    ``synthetic_fallback`` enables the degraded mode of the ticket resilience
    layer: when every real creation path fails, a placeholder reference tagged
    as synthetic is produced instead of failing the workflow.
    """

    base_url: str | None = Field(default=None, description="Base URL of the tracker, e.g. https://acme.atlassian.net")
    email: str | None = Field(default=None, description="Account email used for basic auth")
    api_token: SecretStr | None = Field(default=None, description="API token used for basic auth")
    default_project_key: str = Field(default="TEST", description="Project used for standalone items")
    synthetic_fallback: bool = Field(default=False, description="Produce synthetic tickets when all paths fail")
    request_timeout: float = Field(default=30.0, gt=0, description="HTTP timeout in seconds")

    @property
    def has_credentials(self) -> bool:
        return bool(self.base_url and self.email and self.api_token and self.api_token.get_secret_value())


class GitHubConfig(BaseModel):
    """Source host configuration."""

    token: SecretStr | None = Field(default=None, description="GitHub token (optional for public repositories)")
    base_url: str = Field(default="https://api.github.com", description="GitHub API base URL")
    review_bot: str = Field(default="coderabbit", description="Login fragment identifying review bot comments")


class AIProviderConfig(BaseModel):
    """OpenAI-compatible provider used for planning and generation."""

    base_url: str = Field(default="https://api.openai.com/v1", description="Chat completions base URL")
    model: str = Field(default="gpt-4o-mini", description="Model identifier")
    api_key: SecretStr | None = Field(default=None, description="API key for the provider")
    timeout: float = Field(default=120.0, gt=0, description="Request timeout in seconds")
    model_version: str = Field(default="v1.0", description="Version tag recorded on reward snapshots")


class WorkflowConfig(BaseModel):
    """Workflow engine behavior configuration."""

    state_directory: str = Field(default=".testflow/state", description="Directory for workflow records")
    audit_directory: str = Field(default=".testflow/audit", description="Directory for audit log entries")
    stage_timeout: float = Field(default=120.0, gt=0, description="Per-stage collaborator timeout in seconds")
    ready_status: str = Field(default="Ready for Testing", description="Status that triggers a workflow")
    recent_limit: int = Field(default=50, ge=1, description="Workflows considered by aggregate metrics")


class WebhookConfig(BaseModel):
    """Inbound webhook configuration."""

    secret: SecretStr | None = Field(default=None, description="HMAC secret; unsigned requests accepted when unset")
    signature_header: str = Field(default="X-Jira-Signature", description="Header carrying sha256=<hex>")


class RewardConfig(BaseModel):
    """Reward weighting and training readiness thresholds."""

    code_quality_weight: float = Field(default=0.5, ge=0.0, le=1.0)
    test_execution_weight: float = Field(default=0.4, ge=0.0, le=1.0)
    reasoning_weight: float = Field(default=0.1, ge=0.0, le=1.0)
    training_ready_min: int = Field(default=3, ge=0)
    fine_tuning_ready_min: int = Field(default=10, ge=0)

    @model_validator(mode="after")
    def validate_weights(self) -> RewardConfig:
        """Weights must sum to one so the combined reward stays in [0, 1]."""
        total = self.code_quality_weight + self.test_execution_weight + self.reasoning_weight
        if abs(total - 1.0) > 1e-6:
            raise ValueError(f"Reward weights must sum to 1.0, got {total}")
        return self


class TestflowSettings(BaseSettings):
    """Main testflow settings.

    Combines all configuration sections and supports loading from YAML files
    with environment variable interpolation.
    """

    __test__ = False

    model_config = SettingsConfigDict(
        env_prefix="TESTFLOW_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    tracker: TrackerConfig = Field(default_factory=TrackerConfig)
    github: GitHubConfig = Field(default_factory=GitHubConfig)
    ai: AIProviderConfig = Field(default_factory=AIProviderConfig)
    workflow: WorkflowConfig = Field(default_factory=WorkflowConfig)
    webhook: WebhookConfig = Field(default_factory=WebhookConfig)
    reward: RewardConfig = Field(default_factory=RewardConfig)

    @property
    def state_dir(self) -> Path:
        """Get state directory as Path object."""
        return Path(self.workflow.state_directory)

    @property
    def audit_dir(self) -> Path:
        """Get audit directory as Path object."""
        return Path(self.workflow.audit_directory)

    @classmethod
    def from_yaml(cls, config_path: str) -> TestflowSettings:
        """Load settings from a YAML file, expanding environment references.

        Args:
            config_path: Path to YAML configuration file

        Raises:
            ConfigurationError: If the file is missing, unreadable, references an
                unset variable or fails validation
        """
        path = Path(config_path)
        if not path.is_file():
            raise ConfigurationError(f"Configuration file not found: {config_path}")

        try:
            raw = path.read_text()
        except OSError as e:
            raise ConfigurationError(f"Cannot read configuration file {config_path}: {e}") from e

        try:
            data = yaml.safe_load(expand_env_references(raw)) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {config_path}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigurationError(f"{config_path} must contain a YAML object at the top level")

        try:
            return cls(**data)
        except PydanticValidationError as e:
            raise ConfigurationError(f"Failed to validate {config_path}: {e}") from e


ENV_REFERENCE = re.compile(r"\$\{(?P<name>[A-Z_][A-Z0-9_]*)(?::-(?P<default>[^}]*))?\}")


def expand_env_references(text: str) -> str:
    """Replace ``${NAME}`` and ``${NAME:-default}`` with environment values.

    Comment lines are left alone so commented-out settings may reference
    variables that are not set.

    Raises:
        ConfigurationError: If a reference without a default names an unset
            variable
    """

    def lookup(match: re.Match[str]) -> str:
        value = os.environ.get(match["name"], match["default"])
        if value is None:
            raise ConfigurationError(f"Environment variable {match['name']} referenced in config is not set")
        return value

    return "\n".join(
        line if line.lstrip().startswith("#") else ENV_REFERENCE.sub(lookup, line) for line in text.split("\n")
    )
