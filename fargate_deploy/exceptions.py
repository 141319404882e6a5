"""Error taxonomy for descriptor-driven deployments."""
from typing import Any, List, Optional

from botocore.exceptions import BotoCoreError, ClientError


class DeploymentError(Exception):
    """Base class for all deployment errors."""

    kind = "deployment"


class DescriptorValidationError(DeploymentError):
    """Descriptor is malformed or violates an invariant. Raised before any remote call."""

    kind = "validation"

    def __init__(self, errors: List[str], source: Optional[str] = None):
        self.errors = list(errors)
        self.source = source
        prefix = f"Invalid descriptor {source}" if source else "Invalid descriptor"
        super().__init__(f"{prefix}: " + "; ".join(self.errors))


class ProviderError(DeploymentError):
    """The AWS API rejected or failed a request."""

    kind = "provider"

    def __init__(self, operation: str, code: str, message: str, resource: Optional[str] = None):
        self.operation = operation
        self.code = code
        self.message = message
        self.resource = resource
        detail = f"{operation} failed ({code}): {message}"
        if resource:
            detail = f"{resource}: {detail}"
        super().__init__(detail)

    @classmethod
    def from_boto(cls, error: Exception, resource: Optional[str] = None) -> "ProviderError":
        """Build from a botocore ClientError or BotoCoreError."""
        if isinstance(error, ClientError):
            err = error.response.get("Error", {})
            return cls(
                operation=error.operation_name or "unknown",
                code=err.get("Code", "Unknown"),
                message=err.get("Message", str(error)),
                resource=resource,
            )
        if isinstance(error, BotoCoreError):
            return cls("unknown", type(error).__name__, str(error), resource=resource)
        return cls("unknown", type(error).__name__, str(error), resource=resource)


class StatusTimeoutError(DeploymentError):
    """No task reached a running and healthy state before the timeout.

    The service may still converge later; resources are left in place.
    """

    kind = "timeout"

    def __init__(self, timeout: float, last_state: Any = None):
        self.timeout = timeout
        self.last_state = last_state
        summary = ""
        if last_state is not None:
            summary = (f" (last seen: {last_state.running_count}/{last_state.desired_count} running, "
                       f"{last_state.pending_count} pending)")
        super().__init__(f"No healthy task within {timeout:.0f}s{summary}")


class StateConflictError(DeploymentError):
    """The state file already tracks resources of a different app."""

    kind = "state"

    def __init__(self, state_file: str, recorded_app: str, app_name: str):
        self.state_file = state_file
        self.recorded_app = recorded_app
        self.app_name = app_name
        super().__init__(
            f"State file {state_file} records resources of '{recorded_app}', not '{app_name}'. "
            f"Run 'fargate-deploy destroy' first, or set STATE_FILE to a different path for '{app_name}'."
        )


class PollCancelled(DeploymentError):
    """The caller aborted the status poll."""

    kind = "cancelled"


class ImagePublishError(DeploymentError):
    """Building, tagging or pushing the container image failed."""

    kind = "image"
