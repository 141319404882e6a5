"""
Task status polling and endpoint reporting.

Polls the service's tasks at a fixed interval until one is RUNNING and
healthy, then reports its public address. The public IP is looked up on the
task's elastic network interface; the service itself carries no address.
"""

import json
import logging
import threading
import time
from typing import Any, Dict, List, Optional, Tuple

from botocore.exceptions import ClientError

from fargate_deploy.aws.monitoring.cluster_state import ClusterState, TaskState
from fargate_deploy.aws.utils.aws_clients import AWSClientManager, error_code
from fargate_deploy.descriptor import DeploymentDescriptor
from fargate_deploy.exceptions import PollCancelled, StatusTimeoutError
from fargate_deploy.settings import Settings, get_settings

logger = logging.getLogger(__name__)

# describe_tasks accepts at most 100 ARNs per call
DESCRIBE_TASKS_BATCH = 100


class StatusReporter:
    """Observe a service's tasks and report the endpoint once one is healthy."""

    def __init__(self, clients: AWSClientManager, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.ecs_client = clients.ecs
        self.ec2_client = clients.ec2

    def snapshot(self, descriptor: DeploymentDescriptor) -> ClusterState:
        """One poll of the descriptor's service."""
        return self.snapshot_service(descriptor.cluster_name, descriptor.service_name)

    def snapshot_service(self, cluster_name: str, service_name: str) -> ClusterState:
        """Fetch a fresh ClusterState for one service by name."""
        try:
            response = self.ecs_client.describe_services(cluster=cluster_name, services=[service_name])
        except ClientError as e:
            if error_code(e) == 'ClusterNotFoundException':
                return ClusterState(cluster_name, service_name, 'MISSING', 0, 0, 0)
            raise

        services = [s for s in response.get('services', []) if s.get('status') != 'INACTIVE']
        if not services:
            return ClusterState(cluster_name, service_name, 'MISSING', 0, 0, 0)
        service = services[0]

        tasks = self._describe_tasks(cluster_name, service_name)
        return ClusterState(
            cluster_name=cluster_name,
            service_name=service_name,
            service_status=service['status'],
            desired_count=service.get('desiredCount', 0),
            running_count=service.get('runningCount', 0),
            pending_count=service.get('pendingCount', 0),
            tasks=tasks,
            events=[e.get('message', '') for e in service.get('events', [])[:5]],
        )

    def _describe_tasks(self, cluster_name: str, service_name: str) -> List[TaskState]:
        task_arns = self.ecs_client.list_tasks(
            cluster=cluster_name,
            serviceName=service_name,
            desiredStatus='RUNNING'
        ).get('taskArns', [])
        if not task_arns:
            return []

        raw_tasks: List[Dict[str, Any]] = []
        for start in range(0, len(task_arns), DESCRIBE_TASKS_BATCH):
            batch = task_arns[start:start + DESCRIBE_TASKS_BATCH]
            raw_tasks.extend(self.ecs_client.describe_tasks(cluster=cluster_name, tasks=batch).get('tasks', []))

        eni_details = {task['taskArn']: self._eni_details(task) for task in raw_tasks}
        public_ips = self._public_ips([d['eni'] for d in eni_details.values() if d.get('eni')])

        tasks = []
        for task in raw_tasks:
            details = eni_details[task['taskArn']]
            started_at = task.get('startedAt')
            tasks.append(TaskState(
                task_arn=task['taskArn'],
                last_status=task.get('lastStatus', 'UNKNOWN'),
                desired_status=task.get('desiredStatus', 'RUNNING'),
                health_status=task.get('healthStatus', 'UNKNOWN'),
                private_ip=details.get('private_ip'),
                public_ip=public_ips.get(details.get('eni')),
                network_interface_id=details.get('eni'),
                started_at=started_at.isoformat() if hasattr(started_at, 'isoformat') else started_at,
                stopped_reason=task.get('stoppedReason'),
            ))
        return tasks

    @staticmethod
    def _eni_details(task: Dict[str, Any]) -> Dict[str, Optional[str]]:
        for attachment in task.get('attachments', []):
            if attachment.get('type') != 'ElasticNetworkInterface':
                continue
            details = {d['name']: d.get('value') for d in attachment.get('details', [])}
            return {'eni': details.get('networkInterfaceId'),
                    'private_ip': details.get('privateIPv4Address')}
        return {}

    def _public_ips(self, eni_ids: List[str]) -> Dict[str, str]:
        if not eni_ids:
            return {}
        try:
            response = self.ec2_client.describe_network_interfaces(NetworkInterfaceIds=eni_ids)
        except ClientError as e:
            # A task stopping between calls releases its ENI
            if error_code(e) == 'InvalidNetworkInterfaceID.NotFound':
                logger.debug(f"Network interface vanished while polling: {e}")
                return {}
            raise
        ips = {}
        for eni in response.get('NetworkInterfaces', []):
            public_ip = eni.get('Association', {}).get('PublicIp')
            if public_ip:
                ips[eni['NetworkInterfaceId']] = public_ip
        return ips

    def endpoint_if_ready(self, descriptor: DeploymentDescriptor,
                          state: ClusterState) -> Tuple[bool, Optional[str]]:
        """(ready, endpoint) for a snapshot.

        Ready means a healthy running task has an address and no more tasks
        run than desired. A service scaled to zero is ready with no endpoint
        once nothing runs.
        """
        running = len(state.running_tasks)
        if descriptor.desired_count == 0:
            return running == 0 and state.service_status == 'ACTIVE', None
        if running > descriptor.desired_count:
            return False, None
        endpoint = state.first_endpoint(descriptor.container_port,
                                        health_check_defined=descriptor.health_check is not None)
        return endpoint is not None, endpoint

    def wait_for_endpoint(self, descriptor: DeploymentDescriptor, timeout: Optional[float] = None,
                          interval: Optional[float] = None,
                          cancel_event: Optional[threading.Event] = None) -> Tuple[Optional[str], ClusterState]:
        """Poll until a task is running and healthy.

        Raises:
            StatusTimeoutError: nothing became healthy within ``timeout`` seconds
            PollCancelled: ``cancel_event`` was set while waiting
        """
        timeout = self.settings.poll_timeout_seconds if timeout is None else timeout
        interval = self.settings.poll_interval_seconds if interval is None else interval
        cancel_event = cancel_event or threading.Event()

        deadline = time.monotonic() + timeout
        attempt = 0
        logger.info(f"⏳ Waiting up to {timeout:.0f}s for a healthy task in {descriptor.service_name}")

        while True:
            if cancel_event.is_set():
                raise PollCancelled("status poll cancelled")

            attempt += 1
            state = self.snapshot(descriptor)
            ready, endpoint = self.endpoint_if_ready(descriptor, state)
            if ready:
                logger.info(f"✅ Service ready after {attempt} poll(s): {endpoint or 'no tasks desired'}")
                return endpoint, state

            logger.info(f"Poll {attempt}: {state.service_status}, {len(state.running_tasks)}/"
                        f"{descriptor.desired_count} running, {state.pending_count} pending")

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise StatusTimeoutError(timeout, state)
            if cancel_event.wait(min(interval, remaining)):
                raise PollCancelled("status poll cancelled")

    @staticmethod
    def render(state: ClusterState, output_format: str = 'text', endpoint: Optional[str] = None) -> str:
        """Format a snapshot as JSON or a short text report."""
        if output_format == 'json':
            data = state.to_dict()
            data['endpoint'] = endpoint
            return json.dumps(data, indent=2)

        if output_format != 'text':
            raise ValueError(f"Unsupported output format: {output_format}")

        status_icon = "✅" if state.is_stable else "⚠️"
        report = [
            f"Service: {state.service_name} (cluster {state.cluster_name})",
            f"Status: {status_icon} {state.service_status} - "
            f"{state.running_count}/{state.desired_count} running, {state.pending_count} pending",
        ]
        if endpoint:
            report.append(f"Endpoint: {endpoint}")
        if state.over_provisioned:
            report.append("Deployment in progress: more tasks running than desired")
        if state.tasks:
            report.append("Tasks:")
            for task in state.tasks:
                icon = "✅" if task.is_running else "⏳"
                address = task.address() or "no address"
                report.append(f"  {icon} {task.task_id}: {task.last_status}/{task.health_status} ({address})")
        if state.events:
            report.append("Recent events:")
            for event in state.events:
                report.append(f"  {event}")
        return "\n".join(report)
