"""Outcome of a single convergence attempt."""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

CREATED = "created"
UPDATED = "updated"
DELETED = "deleted"


@dataclass(frozen=True)
class ResourceChange:
    """One mutation made (or planned) against the provider."""
    resource_type: str
    resource_id: str
    action: str

    def to_dict(self) -> Dict[str, str]:
        return {
            "resource_type": self.resource_type,
            "resource_id": self.resource_id,
            "action": self.action,
        }


@dataclass
class ApplyResult:
    """Success with an endpoint, or failure with a reason."""
    status: str
    app_name: Optional[str] = None
    endpoint: Optional[str] = None
    reason: Optional[str] = None
    error_kind: Optional[str] = None
    changes: List[ResourceChange] = field(default_factory=list)
    resources: Dict[str, Any] = field(default_factory=dict)
    cluster_state: Any = None
    duration_seconds: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.status == "success"

    @property
    def changed(self) -> bool:
        return bool(self.changes)

    @classmethod
    def failure(cls, error_kind: str, reason: str, **kwargs) -> "ApplyResult":
        return cls(status="failed", error_kind=error_kind, reason=reason, **kwargs)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "status": self.status,
            "app_name": self.app_name,
            "endpoint": self.endpoint,
            "changed": self.changed,
            "changes": [change.to_dict() for change in self.changes],
            "resources": self.resources,
            "duration_seconds": round(self.duration_seconds, 2),
        }
        if self.status != "success":
            data["error_kind"] = self.error_kind
            data["reason"] = self.reason
        if self.cluster_state is not None:
            data["cluster_state"] = self.cluster_state.to_dict()
        return data
