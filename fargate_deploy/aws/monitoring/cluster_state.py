"""Read-only snapshots of a service's running tasks."""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

RUNNING = "RUNNING"
HEALTHY = "HEALTHY"
UNKNOWN = "UNKNOWN"


@dataclass(frozen=True)
class TaskState:
    """A single task as seen by one poll."""
    task_arn: str
    last_status: str
    desired_status: str = RUNNING
    health_status: str = UNKNOWN
    private_ip: Optional[str] = None
    public_ip: Optional[str] = None
    network_interface_id: Optional[str] = None
    started_at: Optional[str] = None
    stopped_reason: Optional[str] = None

    @property
    def task_id(self) -> str:
        return self.task_arn.rsplit("/", 1)[-1]

    @property
    def is_running(self) -> bool:
        return self.last_status == RUNNING

    def is_healthy(self, health_check_defined: bool) -> bool:
        """RUNNING and, when a health check exists, reported HEALTHY."""
        if not self.is_running:
            return False
        if health_check_defined:
            return self.health_status == HEALTHY
        return self.health_status in (HEALTHY, UNKNOWN)

    def address(self) -> Optional[str]:
        return self.public_ip or self.private_ip

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task_id": self.task_id,
            "last_status": self.last_status,
            "desired_status": self.desired_status,
            "health_status": self.health_status,
            "private_ip": self.private_ip,
            "public_ip": self.public_ip,
            "started_at": self.started_at,
            "stopped_reason": self.stopped_reason,
        }


@dataclass(frozen=True)
class ClusterState:
    """Observed state of one ECS service. Refetched on every poll."""
    cluster_name: str
    service_name: str
    service_status: str
    desired_count: int
    running_count: int
    pending_count: int
    tasks: List[TaskState] = field(default_factory=list)
    events: List[str] = field(default_factory=list)
    observed_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    @property
    def running_tasks(self) -> List[TaskState]:
        return [t for t in self.tasks if t.is_running]

    def healthy_tasks(self, health_check_defined: bool = False) -> List[TaskState]:
        return [t for t in self.tasks if t.is_healthy(health_check_defined)]

    @property
    def is_stable(self) -> bool:
        """Running matches desired with nothing pending."""
        return (self.service_status == "ACTIVE"
                and self.pending_count == 0
                and len(self.running_tasks) == self.desired_count)

    @property
    def over_provisioned(self) -> bool:
        """More tasks running than desired, e.g. mid rolling deployment."""
        return len(self.running_tasks) > self.desired_count

    def first_endpoint(self, port: int, health_check_defined: bool = False) -> Optional[str]:
        """URL of the first healthy task with an address."""
        for task in self.healthy_tasks(health_check_defined):
            address = task.address()
            if address:
                return f"http://{address}:{port}"
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cluster": self.cluster_name,
            "service": self.service_name,
            "service_status": self.service_status,
            "desired": self.desired_count,
            "running": self.running_count,
            "pending": self.pending_count,
            "stable": self.is_stable,
            "tasks": [t.to_dict() for t in self.tasks],
            "events": self.events,
            "observed_at": self.observed_at,
        }
