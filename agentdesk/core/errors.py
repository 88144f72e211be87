"""Error taxonomy shared by agents, routing and workflows."""
from __future__ import annotations

from typing import Any, Dict, Optional


class ErrorCode:
    """String codes carried by ``AgentError`` values."""

    EXECUTION_ERROR = "EXECUTION_ERROR"
    TIMEOUT = "TIMEOUT"
    TRANSIENT = "TRANSIENT_FAILURE"
    VALIDATION = "VALIDATION_FAILURE"
    CONFIGURATION = "CONFIGURATION_ERROR"
    ILLEGAL_STATE = "ILLEGAL_STATE"
    APPROVAL_REQUIRED = "APPROVAL_REQUIRED"
    AGENT_DISABLED = "AGENT_DISABLED"
    AGENT_NOT_FOUND = "AGENT_NOT_FOUND"
    CANCELLED = "CANCELLED"
    WORKFLOW_TIMEOUT = "WORKFLOW_TIMEOUT"


class AgentDeskError(Exception):
    """Base class for every error raised by the framework."""

    code = ErrorCode.EXECUTION_ERROR
    retryable = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error_type": self.__class__.__name__,
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


class ConfigurationError(AgentDeskError):
    """Fatal setup problem, surfaced at startup and never retried."""

    code = ErrorCode.CONFIGURATION


class TransientFailure(AgentDeskError):
    """Network or storage hiccup; the caller may retry."""

    code = ErrorCode.TRANSIENT
    retryable = True


class ValidationFailure(AgentDeskError):
    """Malformed caller input."""

    code = ErrorCode.VALIDATION


class ApprovalRequired(AgentDeskError):
    """Pending-approval state. Not a failure."""

    code = ErrorCode.APPROVAL_REQUIRED


class IllegalStateError(AgentDeskError):
    """Lifecycle contract violation."""

    code = ErrorCode.ILLEGAL_STATE


class DuplicateIdError(AgentDeskError):
    """An agent with the same id is already registered."""

    code = "DUPLICATE_ID"
