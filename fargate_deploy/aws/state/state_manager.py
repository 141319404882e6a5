"""
Deployment state management.

Keeps a local JSON record of what was applied: the descriptor fingerprint,
every resource the convergence driver created or adopted, and the last
endpoint reported. Teardown and ``status`` without a descriptor read it.
"""

import json
import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fargate_deploy.exceptions import StateConflictError
from fargate_deploy.settings import get_settings

logger = logging.getLogger(__name__)

NOT_DEPLOYED = "not_deployed"
DEPLOYING = "deploying"
DEPLOYED = "deployed"
FAILED = "failed"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class StateManager:
    """Manages deployment state for idempotent AWS operations."""

    def __init__(self, state_file: Optional[str] = None):
        self.state_file = state_file or get_settings().state_file
        self.state = self._load_state()

    @staticmethod
    def _empty_state() -> Dict[str, Any]:
        return {
            "deployment_id": None,
            "app_name": None,
            "fingerprint": None,
            "created_at": None,
            "last_updated": None,
            "status": NOT_DEPLOYED,
            "endpoint": None,
            "resources": {},
        }

    def _load_state(self) -> Dict[str, Any]:
        """Load deployment state from file."""
        if os.path.exists(self.state_file):
            try:
                with open(self.state_file, 'r') as f:
                    return {**self._empty_state(), **json.load(f)}
            except (json.JSONDecodeError, OSError) as e:
                logger.warning(f"Ignoring unreadable state file {self.state_file}: {e}")
        return self._empty_state()

    def save_state(self):
        """Save current state to file."""
        self.state["last_updated"] = _now()
        try:
            with open(self.state_file, 'w') as f:
                json.dump(self.state, f, indent=2)
        except OSError as e:
            logger.warning(f"Could not save state file: {e}")

    @property
    def status(self) -> str:
        return self.state.get("status", NOT_DEPLOYED)

    @property
    def app_name(self) -> Optional[str]:
        return self.state.get("app_name")

    @property
    def fingerprint(self) -> Optional[str]:
        return self.state.get("fingerprint")

    @property
    def endpoint(self) -> Optional[str]:
        return self.state.get("endpoint")

    def start_deployment(self, deployment_id: str, app_name: str, fingerprint: str):
        """Start a new deployment.

        Resources recorded by earlier applies of the same app are kept, since
        convergence adopts them rather than recreating them.

        Raises:
            StateConflictError: the file still records resources of another app
        """
        if self.app_name and self.app_name != app_name:
            if self.list_resources():
                raise StateConflictError(self.state_file, self.app_name, app_name)
            logger.info(f"State file tracked '{self.app_name}', now tracking '{app_name}'")
            self.state = self._empty_state()
        self.state.update({
            "deployment_id": deployment_id,
            "app_name": app_name,
            "fingerprint": fingerprint,
            "created_at": self.state.get("created_at") or _now(),
            "status": DEPLOYING,
            "error": None,
        })
        self.save_state()

    def record_resource(self, resource_type: str, resource_id: str,
                        resource_data: Optional[Dict[str, Any]] = None):
        """Record a created or adopted AWS resource."""
        resources = self.state.setdefault("resources", {}).setdefault(resource_type, {})
        previous = resources.get(resource_id, {})
        resources[resource_id] = {
            **(resource_data or {}),
            "recorded_at": previous.get("recorded_at", _now()),
        }
        self.save_state()

    def forget_resource(self, resource_type: str, resource_id: str):
        """Drop a resource that no longer exists."""
        resources = self.state.get("resources", {})
        resources.get(resource_type, {}).pop(resource_id, None)
        if resource_type in resources and not resources[resource_type]:
            del resources[resource_type]
        self.save_state()

    def get_resource(self, resource_type: str, resource_id: str) -> Optional[Dict[str, Any]]:
        """Get information about a recorded resource."""
        return (self.state.get("resources", {})
                .get(resource_type, {})
                .get(resource_id))

    def list_resources(self, resource_type: Optional[str] = None) -> Dict[str, Any]:
        """List all recorded resources, optionally filtered by type."""
        resources = self.state.get("resources", {})
        if resource_type:
            return resources.get(resource_type, {})
        return resources

    def mark_deployment_complete(self, endpoint: Optional[str] = None):
        """Mark deployment as complete."""
        self.state["status"] = DEPLOYED
        self.state["error"] = None
        if endpoint is not None:
            self.state["endpoint"] = endpoint
        self.save_state()

    def mark_deployment_failed(self, error: str, error_kind: str = "deployment"):
        """Mark deployment as failed."""
        self.state["status"] = FAILED
        self.state["error"] = {"kind": error_kind, "reason": error}
        self.save_state()

    def clear_state(self):
        """Clear all deployment state."""
        if os.path.exists(self.state_file):
            os.remove(self.state_file)
        self.state = self._empty_state()

    def summary(self) -> Dict[str, Any]:
        """Status fields plus a count of resources per type."""
        return {
            "deployment_id": self.state.get("deployment_id"),
            "app_name": self.app_name,
            "status": self.status,
            "fingerprint": self.fingerprint,
            "endpoint": self.endpoint,
            "created_at": self.state.get("created_at"),
            "last_updated": self.state.get("last_updated"),
            "error": self.state.get("error"),
            "resources": {k: len(v) for k, v in self.list_resources().items()},
        }
