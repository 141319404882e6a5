"""
Deployment teardown.

Deletes every resource recorded in the state file, dependents first, so a
deployment can be removed without leaving orphans behind.
"""

import logging
from typing import Any, Callable, Dict, List, Optional

from botocore.exceptions import BotoCoreError, ClientError

from fargate_deploy.aws.infrastructure.ecs import EXECUTION_POLICY_ARN
from fargate_deploy.aws.orchestration.results import DELETED
from fargate_deploy.aws.state.state_manager import StateManager
from fargate_deploy.aws.utils.aws_clients import AWSClientManager, error_code

logger = logging.getLogger(__name__)

# Resource types in deletion order
TEARDOWN_ORDER = [
    "ecs_service",
    "task_definition",
    "ecs_cluster",
    "iam_role",
    "log_group",
    "security_group",
    "route_table",
    "subnet",
    "internet_gateway",
    "vpc",
]

# Error codes meaning the resource is already gone
ALREADY_GONE = {
    "ServiceNotFoundException",
    "ServiceNotActiveException",
    "ClusterNotFoundException",
    "NoSuchEntity",
    "ResourceNotFoundException",
    "InvalidGroup.NotFound",
    "InvalidRouteTableID.NotFound",
    "InvalidSubnetID.NotFound",
    "InvalidInternetGatewayID.NotFound",
    "InvalidVpcID.NotFound",
}


class TeardownManager:
    """Removes the AWS resources of a recorded deployment."""

    def __init__(self, clients: AWSClientManager, state_manager: Optional[StateManager] = None,
                 wait_for_drain: bool = True):
        self.clients = clients
        self.state_manager = state_manager or StateManager()
        self.wait_for_drain = wait_for_drain

    def can_teardown(self) -> bool:
        return bool(self.state_manager.list_resources())

    def create_plan(self) -> List[Dict[str, Any]]:
        """Ordered list of delete actions for every recorded resource."""
        resources = self.state_manager.list_resources()
        plan = []
        for priority, resource_type in enumerate(TEARDOWN_ORDER, start=1):
            for resource_id, data in resources.get(resource_type, {}).items():
                plan.append({
                    "action": f"delete_{resource_type}",
                    "resource_type": resource_type,
                    "resource_id": resource_id,
                    "data": data,
                    "priority": priority,
                })
        unknown = set(resources) - set(TEARDOWN_ORDER)
        if unknown:
            logger.warning(f"State holds resource types teardown does not handle: {', '.join(sorted(unknown))}")
        return plan

    def execute(self, dry_run: bool = True) -> Dict[str, Any]:
        """Execute the teardown plan.

        Failures are collected per resource and do not stop later actions.
        State is cleared only when nothing failed.
        """
        plan = self.create_plan()
        results = {
            "dry_run": dry_run,
            "success": [],
            "failed": [],
        }

        for action in plan:
            entry = {"action": action["action"], "resource": action["resource_id"]}
            if dry_run:
                results["success"].append({**entry, "status": "would_delete"})
                continue

            handler: Callable[[str, Dict[str, Any]], None] = getattr(self, f"_{action['action']}")
            try:
                handler(action["resource_id"], action["data"])
                status = DELETED
            except ClientError as e:
                if error_code(e) not in ALREADY_GONE:
                    logger.error(f"Failed to {action['action']} {action['resource_id']}: {e}")
                    results["failed"].append({**entry, "error": str(e)})
                    continue
                status = "already_deleted"
            except BotoCoreError as e:
                logger.error(f"Failed to {action['action']} {action['resource_id']}: {e}")
                results["failed"].append({**entry, "error": str(e)})
                continue

            logger.info(f"Have {status.replace('_', ' ')} {action['resource_type']}: {action['resource_id']}")
            results["success"].append({**entry, "status": status})
            self.state_manager.forget_resource(action["resource_type"], action["resource_id"])

        if not dry_run:
            if results["failed"]:
                self.state_manager.mark_deployment_failed(
                    f"teardown left {len(results['failed'])} resource(s) behind", "teardown")
            else:
                self.state_manager.clear_state()
        return results

    # Delete actions, one per resource type

    def _delete_ecs_service(self, service_name: str, data: Dict[str, Any]) -> None:
        cluster = data.get("cluster")
        ecs = self.clients.ecs
        try:
            ecs.update_service(cluster=cluster, service=service_name, desiredCount=0)
        except ClientError as e:
            # An inactive service can still be deleted below
            if error_code(e) != "ServiceNotActiveException":
                raise
        ecs.delete_service(cluster=cluster, service=service_name, force=True)
        if self.wait_for_drain:
            logger.info(f"Waiting for service {service_name} to drain")
            ecs.get_waiter("services_inactive").wait(
                cluster=cluster,
                services=[service_name],
                WaiterConfig={"Delay": 15, "MaxAttempts": 40}
            )

    def _delete_task_definition(self, task_definition_arn: str, data: Dict[str, Any]) -> None:
        self.clients.ecs.deregister_task_definition(taskDefinition=task_definition_arn)

    def _delete_ecs_cluster(self, cluster_name: str, data: Dict[str, Any]) -> None:
        self.clients.ecs.delete_cluster(cluster=cluster_name)

    def _delete_iam_role(self, role_name: str, data: Dict[str, Any]) -> None:
        iam = self.clients.iam
        try:
            iam.detach_role_policy(RoleName=role_name, PolicyArn=data.get("policy_arn", EXECUTION_POLICY_ARN))
        except ClientError as e:
            if error_code(e) != "NoSuchEntity":
                raise
        iam.delete_role(RoleName=role_name)

    def _delete_log_group(self, log_group_name: str, data: Dict[str, Any]) -> None:
        self.clients.logs.delete_log_group(logGroupName=log_group_name)

    def _delete_security_group(self, group_id: str, data: Dict[str, Any]) -> None:
        self.clients.ec2.delete_security_group(GroupId=group_id)

    def _delete_route_table(self, route_table_id: str, data: Dict[str, Any]) -> None:
        ec2 = self.clients.ec2
        response = ec2.describe_route_tables(RouteTableIds=[route_table_id])
        for table in response.get("RouteTables", []):
            for association in table.get("Associations", []):
                if not association.get("Main") and association.get("RouteTableAssociationId"):
                    ec2.disassociate_route_table(AssociationId=association["RouteTableAssociationId"])
        ec2.delete_route_table(RouteTableId=route_table_id)

    def _delete_subnet(self, subnet_id: str, data: Dict[str, Any]) -> None:
        self.clients.ec2.delete_subnet(SubnetId=subnet_id)

    def _delete_internet_gateway(self, gateway_id: str, data: Dict[str, Any]) -> None:
        ec2 = self.clients.ec2
        if data.get("vpc_id"):
            try:
                ec2.detach_internet_gateway(InternetGatewayId=gateway_id, VpcId=data["vpc_id"])
            except ClientError as e:
                if error_code(e) != "Gateway.NotAttached":
                    raise
        ec2.delete_internet_gateway(InternetGatewayId=gateway_id)

    def _delete_vpc(self, vpc_id: str, data: Dict[str, Any]) -> None:
        self.clients.ec2.delete_vpc(VpcId=vpc_id)
