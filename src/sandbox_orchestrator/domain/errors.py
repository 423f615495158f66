from typing import Optional


class OrchestratorError(Exception):
    """Base class for every error the orchestration core raises."""

    code = "internal"
    retryable = True

    def __init__(self, message: str = "") -> None:
        super().__init__(message)
        self.message = message


class ValidationError(OrchestratorError):
    code = "validation"
    retryable = False


class NotFoundError(OrchestratorError):
    code = "not_found"
    retryable = False


class ProvisioningError(OrchestratorError):
    code = "provisioning"


class ReadinessTimeoutError(ProvisioningError):
    code = "readiness_timeout"


class NoExecutionCapabilityError(ProvisioningError):
    code = "no_execution_capability"
    retryable = False


class ToolResolutionError(OrchestratorError):
    code = "tool_resolution"
    retryable = False


class ToolInvocationError(OrchestratorError):
    code = "tool_invocation"


class NotificationDeliveryError(OrchestratorError):
    code = "notification_delivery"


class InstallFailedError(OrchestratorError):
    """Raised by the connection manager after cleanup of a failed install.

    ``message`` is already redacted; ``connection_id`` is set when a
    connection record was created (never in test mode).
    """

    code = "install_failed"
    retryable = False

    def __init__(
        self,
        message: str,
        connection_id: Optional[str] = None,
        cause_code: str = "",
        test_mode: bool = False,
    ) -> None:
        super().__init__(message)
        self.connection_id = connection_id
        self.cause_code = cause_code
        self.test_mode = test_mode
