"""Configuration management for the agent desk."""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Mapping, Optional

from agentdesk.core.errors import ConfigurationError
from agentdesk.core.models import ApprovalLevel, NotificationPriority

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def _float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from exc


def _int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from exc


@dataclass(frozen=True)
class Config:
    """Application configuration loaded from environment variables."""

    environment: str = "development"
    log_level: str = "INFO"
    confidence_floor: float = 0.5
    catch_all_agent_id: str = "escalation-desk"
    workflow_concurrency: int = 4
    escalation_threshold: NotificationPriority = NotificationPriority.HIGH
    default_grant: ApprovalLevel = ApprovalLevel.LOW
    webhook_url: Optional[str] = None

    def __post_init__(self) -> None:
        if not 0.0 <= self.confidence_floor <= 1.0:
            raise ConfigurationError("AGENTDESK_CONFIDENCE_FLOOR must be within [0, 1]")
        if self.workflow_concurrency < 1:
            raise ConfigurationError("AGENTDESK_WORKFLOW_CONCURRENCY must be at least 1")
        if not self.catch_all_agent_id:
            raise ConfigurationError("AGENTDESK_CATCH_ALL_AGENT must not be empty")
        if logging.getLevelName(self.log_level.upper()) == f"Level {self.log_level.upper()}":
            raise ConfigurationError(f"Unknown log level: {self.log_level}")

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> Config:
        """Load configuration from environment variables."""
        env = os.environ if env is None else env
        return cls(
            environment=env.get("AGENTDESK_ENVIRONMENT", "development"),
            log_level=env.get("AGENTDESK_LOG_LEVEL", "INFO").upper(),
            confidence_floor=_float(env, "AGENTDESK_CONFIDENCE_FLOOR", 0.5),
            catch_all_agent_id=env.get("AGENTDESK_CATCH_ALL_AGENT", "escalation-desk"),
            workflow_concurrency=_int(env, "AGENTDESK_WORKFLOW_CONCURRENCY", 4),
            escalation_threshold=NotificationPriority.parse(env.get("AGENTDESK_ESCALATION_THRESHOLD", "high")),
            default_grant=ApprovalLevel.parse(env.get("AGENTDESK_DEFAULT_GRANT", "low")),
            webhook_url=env.get("AGENTDESK_WEBHOOK_URL") or None,
        )


def configure_logging(config: Config) -> None:
    logging.basicConfig(level=config.log_level, format=LOG_FORMAT)
    logging.getLogger(__name__).debug("Logging configured at %s", config.log_level)
