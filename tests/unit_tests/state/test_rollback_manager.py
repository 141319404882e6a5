"""Tests for deployment teardown."""
import os

import pytest
from botocore.exceptions import ClientError

from fargate_deploy.aws.infrastructure.ecs import EXECUTION_POLICY_ARN
from fargate_deploy.aws.orchestration.deploy_ecs import ConvergenceDriver
from fargate_deploy.aws.state.rollback_manager import TeardownManager
from fargate_deploy.aws.state.state_manager import FAILED
from tests.fixtures.descriptor_fixtures import TEST_CLUSTER, TEST_SERVICE

PROJECT_FILTER = [{"Name": "tag:Project", "Values": ["chatbot"]}]


@pytest.fixture
def deployed(settings, clients, state_manager, descriptor, aws_calls):
    result = ConvergenceDriver(settings=settings, clients=clients, state_manager=state_manager).apply(
        descriptor, wait=False)
    assert result.succeeded, result.reason
    aws_calls.reset()
    return result


@pytest.fixture
def teardown(clients, state_manager):
    return TeardownManager(clients, state_manager)


def calls_after(calls, call):
    return calls[calls.index(call) + 1:]


def test_nothing_to_tear_down(teardown):
    assert not teardown.can_teardown()
    assert teardown.create_plan() == []


def test_plan_deletes_dependents_first(deployed, teardown):
    plan = teardown.create_plan()

    types = [action["resource_type"] for action in plan]
    assert types == [
        "ecs_service", "task_definition", "ecs_cluster", "iam_role", "log_group",
        "security_group", "route_table", "subnet", "subnet", "internet_gateway", "vpc",
    ]
    assert plan[0]["action"] == "delete_ecs_service"
    assert plan[0]["data"]["cluster"] == TEST_CLUSTER


def test_dry_run_deletes_nothing(deployed, teardown, aws_calls):
    results = teardown.execute(dry_run=True)

    assert results["dry_run"] is True
    assert {entry["status"] for entry in results["success"]} == {"would_delete"}
    assert aws_calls.calls == []
    assert teardown.can_teardown()


def test_full_teardown(deployed, teardown, clients, aws_calls, settings):
    results = teardown.execute(dry_run=False)

    assert results["failed"] == []
    assert len(results["success"]) == 11
    assert {entry["status"] for entry in results["success"]} == {"deleted"}

    ec2 = clients.ec2
    assert ec2.describe_vpcs(Filters=PROJECT_FILTER)["Vpcs"] == []
    assert ec2.describe_subnets(Filters=PROJECT_FILTER)["Subnets"] == []
    assert ec2.describe_internet_gateways(Filters=PROJECT_FILTER)["InternetGateways"] == []
    assert ec2.describe_route_tables(Filters=PROJECT_FILTER)["RouteTables"] == []
    assert ec2.describe_security_groups(Filters=PROJECT_FILTER)["SecurityGroups"] == []

    ecs = clients.ecs
    assert ecs.describe_clusters(clusters=[TEST_CLUSTER])["clusters"][0]["status"] == "INACTIVE"
    service = ecs.describe_services(cluster=TEST_CLUSTER, services=[TEST_SERVICE])["services"][0]
    assert service["status"] == "INACTIVE"
    assert "chatbot-ecs-execution-role" not in [r["RoleName"] for r in clients.iam.list_roles()["Roles"]]
    assert clients.logs.describe_log_groups(logGroupNamePrefix="/ecs/chatbot")["logGroups"] == []

    # The drain waiter polls DescribeServices after the delete
    assert ("ecs", "DescribeServices") in calls_after(aws_calls.calls, ("ecs", "DeleteService"))
    assert not os.path.exists(settings.state_file)


def test_no_drain_wait(deployed, clients, state_manager, aws_calls):
    TeardownManager(clients, state_manager, wait_for_drain=False).execute(dry_run=False)

    assert ("ecs", "DescribeServices") not in calls_after(aws_calls.calls, ("ecs", "DeleteService"))


def test_failure_is_collected_and_kept_in_state(deployed, teardown, clients, state_manager, monkeypatch):
    group_id = next(iter(state_manager.list_resources("security_group")))

    def in_use(**kwargs):
        raise ClientError({"Error": {"Code": "DependencyViolation",
                                     "Message": "resource has a dependent object"}}, "DeleteSecurityGroup")

    monkeypatch.setattr(clients.ec2, "delete_security_group", in_use)
    results = teardown.execute(dry_run=False)

    assert [entry["resource"] for entry in results["failed"]] == [group_id]
    assert "DependencyViolation" in results["failed"][0]["error"]
    assert clients.ec2.describe_subnets(Filters=PROJECT_FILTER)["Subnets"] == []
    assert list(state_manager.list_resources()) == ["security_group"]
    assert state_manager.status == FAILED
    assert state_manager.state["error"]["kind"] == "teardown"


def test_resources_already_gone(deployed, teardown, clients):
    clients.logs.delete_log_group(logGroupName="/ecs/chatbot")
    clients.iam.detach_role_policy(RoleName="chatbot-ecs-execution-role", PolicyArn=EXECUTION_POLICY_ARN)
    clients.iam.delete_role(RoleName="chatbot-ecs-execution-role")

    results = teardown.execute(dry_run=False)

    statuses = {entry["action"]: entry["status"] for entry in results["success"]}
    assert statuses["delete_log_group"] == "already_deleted"
    assert statuses["delete_iam_role"] == "already_deleted"
    assert statuses["delete_vpc"] == "deleted"
    assert results["failed"] == []
