"""Configuration system for the testflow engine.

This package provides type-safe configuration management using Pydantic,
including settings for the issue tracker, source host, AI provider, workflow
engine, webhook intake and reward scoring.

Example:
    >>> from testflow.config import TestflowSettings
    >>> settings = TestflowSettings.from_yaml("testflow.yaml")
    >>> settings.tracker.default_project_key
    'TEST'
"""

from testflow.config.settings import (
    AIProviderConfig,
    GitHubConfig,
    RewardConfig,
    TestflowSettings,
    TrackerConfig,
    WebhookConfig,
    WorkflowConfig,
)

__all__ = [
    "AIProviderConfig",
    "GitHubConfig",
    "RewardConfig",
    "TestflowSettings",
    "TrackerConfig",
    "WebhookConfig",
    "WorkflowConfig",
]
