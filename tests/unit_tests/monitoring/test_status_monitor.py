"""Tests for task status polling and endpoint reporting."""
import json
import threading

import pytest

from fargate_deploy.aws.monitoring.cluster_state import ClusterState, TaskState
from fargate_deploy.aws.monitoring.status_monitor import StatusReporter
from fargate_deploy.descriptor import validate_descriptor
from fargate_deploy.exceptions import PollCancelled, StatusTimeoutError
from tests.fixtures.descriptor_fixtures import TEST_CLUSTER, TEST_SERVICE

ENDPOINT = "http://54.10.20.30:8080"


@pytest.fixture
def service(clients, fargate_tasks, aws_calls, monkeypatch):
    # moto reports this many running tasks for every new service
    monkeypatch.setenv("MOTO_ECS_SERVICE_RUNNING", "1")
    clients.ecs.create_cluster(clusterName=TEST_CLUSTER)
    response = clients.ecs.create_service(cluster=TEST_CLUSTER, serviceName=TEST_SERVICE,
                                          desiredCount=1, launchType="FARGATE")
    aws_calls.reset()
    return response["service"]


@pytest.fixture
def reporter(clients, settings):
    return StatusReporter(clients, settings)


class TestSnapshot:
    """Single polls of the service."""

    def test_no_tasks(self, reporter, descriptor, service):
        state = reporter.snapshot(descriptor)

        assert state.service_status == "ACTIVE"
        assert state.desired_count == 1
        assert state.tasks == []
        assert not state.is_stable

    def test_missing_cluster(self, reporter, descriptor):
        state = reporter.snapshot(descriptor)

        assert state.service_status == "MISSING"
        assert state.running_count == 0

    def test_inactive_service_is_missing(self, reporter, descriptor, service, clients):
        clients.ecs.delete_service(cluster=TEST_CLUSTER, service=TEST_SERVICE, force=True)
        assert reporter.snapshot(descriptor).service_status == "MISSING"

    def test_public_ip_from_network_interface(self, reporter, descriptor, service, fargate_tasks):
        fargate_tasks.add_task(TEST_CLUSTER, TEST_SERVICE)

        state = reporter.snapshot(descriptor)

        task = state.tasks[0]
        assert task.public_ip == "54.10.20.30"
        assert task.private_ip == "10.0.1.15"
        assert task.network_interface_id.startswith("eni-")
        assert task.started_at == "2026-01-01T00:00:00+00:00"
        assert state.is_stable

    def test_recent_events_limited(self, reporter, descriptor, service, clients, monkeypatch):
        real_describe = clients.ecs.describe_services

        def with_events(**kwargs):
            response = real_describe(**kwargs)
            for svc in response["services"]:
                svc["events"] = [{"message": f"event {i}"} for i in range(8)]
            return response

        monkeypatch.setattr(clients.ecs, "describe_services", with_events)
        assert reporter.snapshot(descriptor).events == [f"event {i}" for i in range(5)]

    def test_vanished_network_interface(self, reporter, descriptor, service, fargate_tasks):
        task = fargate_tasks.add_task(TEST_CLUSTER, TEST_SERVICE)
        fargate_tasks.remove_interface(task)

        state = reporter.snapshot(descriptor)

        assert state.tasks[0].public_ip is None
        assert state.tasks[0].address() == "10.0.1.15"


class TestWaitForEndpoint:
    """Polling until a task is healthy."""

    def test_returns_endpoint(self, reporter, descriptor, service, fargate_tasks):
        fargate_tasks.add_task(TEST_CLUSTER, TEST_SERVICE)

        endpoint, state = reporter.wait_for_endpoint(descriptor)

        assert endpoint == ENDPOINT
        assert len(state.running_tasks) == 1

    def test_polls_until_task_starts(self, reporter, descriptor, service, fargate_tasks):
        fargate_tasks.add_task(TEST_CLUSTER, TEST_SERVICE, after_polls=3)

        endpoint, _ = reporter.wait_for_endpoint(descriptor)

        assert endpoint == ENDPOINT
        assert fargate_tasks.list_calls == 3

    def test_timeout_keeps_last_state(self, reporter, descriptor, service, fargate_tasks):
        fargate_tasks.add_task(TEST_CLUSTER, TEST_SERVICE, last_status="PENDING")

        with pytest.raises(StatusTimeoutError) as exc_info:
            reporter.wait_for_endpoint(descriptor, timeout=0.05)

        assert exc_info.value.timeout == 0.05
        assert exc_info.value.last_state.tasks[0].last_status == "PENDING"

    def test_cancelled_before_first_poll(self, reporter, descriptor, service, aws_calls):
        cancel_event = threading.Event()
        cancel_event.set()

        with pytest.raises(PollCancelled):
            reporter.wait_for_endpoint(descriptor, cancel_event=cancel_event)
        assert aws_calls.calls == []

    def test_cancelled_while_waiting(self, reporter, descriptor, service):
        cancel_event = threading.Event()
        timer = threading.Timer(0.05, cancel_event.set)
        timer.start()
        try:
            with pytest.raises(PollCancelled):
                reporter.wait_for_endpoint(descriptor, timeout=5, interval=0.01, cancel_event=cancel_event)
        finally:
            timer.cancel()

    def test_over_provisioned_not_ready(self, reporter, descriptor, service, fargate_tasks):
        fargate_tasks.add_task(TEST_CLUSTER, TEST_SERVICE)
        fargate_tasks.add_task(TEST_CLUSTER, TEST_SERVICE, public_ip="54.10.20.31")

        with pytest.raises(StatusTimeoutError):
            reporter.wait_for_endpoint(descriptor, timeout=0.05)

    def test_health_check_requires_healthy(self, reporter, descriptor_data, service, fargate_tasks):
        descriptor = validate_descriptor(dict(descriptor_data, health_check={"command": ["CMD", "true"]}))
        task = fargate_tasks.add_task(TEST_CLUSTER, TEST_SERVICE, health_status="UNKNOWN")

        with pytest.raises(StatusTimeoutError):
            reporter.wait_for_endpoint(descriptor, timeout=0.05)

        task["healthStatus"] = "HEALTHY"
        endpoint, _ = reporter.wait_for_endpoint(descriptor)
        assert endpoint == ENDPOINT

    def test_unhealthy_task_not_ready(self, reporter, descriptor, service, fargate_tasks):
        fargate_tasks.add_task(TEST_CLUSTER, TEST_SERVICE, health_status="UNHEALTHY")

        with pytest.raises(StatusTimeoutError):
            reporter.wait_for_endpoint(descriptor, timeout=0.05)

    def test_private_ip_when_no_public_ip(self, reporter, descriptor, service, fargate_tasks):
        fargate_tasks.add_task(TEST_CLUSTER, TEST_SERVICE, public_ip=None)

        endpoint, _ = reporter.wait_for_endpoint(descriptor)

        assert endpoint == "http://10.0.1.15:8080"

    def test_scaled_to_zero(self, reporter, descriptor_data, service):
        descriptor = validate_descriptor(dict(descriptor_data, desired_count=0))

        endpoint, state = reporter.wait_for_endpoint(descriptor)

        assert endpoint is None
        assert state.service_status == "ACTIVE"


class TestRender:
    """Report formatting."""

    STATE = ClusterState(
        cluster_name=TEST_CLUSTER,
        service_name=TEST_SERVICE,
        service_status="ACTIVE",
        desired_count=1,
        running_count=1,
        pending_count=0,
        tasks=[TaskState(task_arn="arn:aws:ecs:us-east-1:123456789012:task/chatbot-cluster/abc123",
                         last_status="RUNNING", public_ip="54.10.20.30")],
        events=["(service chatbot-service) has reached a steady state."],
    )

    def test_text(self):
        report = StatusReporter.render(self.STATE, endpoint=ENDPOINT)

        assert "Service: chatbot-service (cluster chatbot-cluster)" in report
        assert "Status: ✅ ACTIVE - 1/1 running, 0 pending" in report
        assert f"Endpoint: {ENDPOINT}" in report
        assert "abc123: RUNNING/UNKNOWN (54.10.20.30)" in report
        assert "has reached a steady state" in report

    def test_json(self):
        data = json.loads(StatusReporter.render(self.STATE, "json", endpoint=ENDPOINT))

        assert data["endpoint"] == ENDPOINT
        assert data["stable"] is True
        assert data["tasks"][0]["task_id"] == "abc123"

    def test_unsupported_format(self):
        with pytest.raises(ValueError, match="Unsupported output format"):
            StatusReporter.render(self.STATE, "xml")

    def test_over_provisioned_noted(self):
        extra = TaskState(task_arn="arn:aws:ecs:us-east-1:123456789012:task/chatbot-cluster/def456",
                          last_status="RUNNING", public_ip="54.10.20.31")
        state = ClusterState(TEST_CLUSTER, TEST_SERVICE, "ACTIVE", desired_count=1, running_count=2,
                             pending_count=0, tasks=self.STATE.tasks + [extra])

        report = StatusReporter.render(state)

        assert "Deployment in progress: more tasks running than desired" in report
        assert "more tasks running" not in StatusReporter.render(self.STATE)
