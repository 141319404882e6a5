"""ECS cluster, task execution role and CloudWatch log group."""
import json
import logging
from typing import Any, Dict, List, Optional

from botocore.exceptions import ClientError

from fargate_deploy.aws.infrastructure.vpc import MANAGED_BY
from fargate_deploy.aws.orchestration.results import CREATED, UPDATED, ResourceChange
from fargate_deploy.aws.utils.aws_clients import AWSClientManager, error_code
from fargate_deploy.descriptor import DeploymentDescriptor

logger = logging.getLogger(__name__)

EXECUTION_POLICY_ARN = "arn:aws:iam::aws:policy/service-role/AmazonECSTaskExecutionRolePolicy"

ECS_TASKS_TRUST_POLICY = {
    "Version": "2012-10-17",
    "Statement": [
        {
            "Effect": "Allow",
            "Principal": {"Service": "ecs-tasks.amazonaws.com"},
            "Action": "sts:AssumeRole"
        }
    ]
}


class ECSClusterManager:
    """Manager for the Fargate cluster and the resources its tasks depend on."""

    def __init__(self, descriptor: DeploymentDescriptor, clients: AWSClientManager,
                 dry_run: bool = False):
        self.descriptor = descriptor
        self.ecs_client = clients.ecs
        self.iam_client = clients.iam
        self.logs_client = clients.logs
        self.dry_run = dry_run
        self.changes: List[ResourceChange] = []
        self.cluster_arn: Optional[str] = None
        self.execution_role_arn: Optional[str] = None
        self.log_group_name = descriptor.log_group_name

    def _record(self, resource_type: str, resource_id: str, action: str) -> None:
        self.changes.append(ResourceChange(resource_type, resource_id, action))
        verb = "Would have" if self.dry_run else "Have"
        logger.info(f"{verb} {action} {resource_type}: {resource_id}")

    def ensure_log_group(self) -> str:
        """Create the CloudWatch log group for task output and keep its retention."""
        name = self.log_group_name
        retention = self.descriptor.log_retention_days

        existing = self._find_existing_log_group(name)
        if existing is None:
            if not self.dry_run:
                self.logs_client.create_log_group(
                    logGroupName=name,
                    tags={'Project': self.descriptor.app_name, 'ManagedBy': MANAGED_BY}
                )
                self.logs_client.put_retention_policy(logGroupName=name, retentionInDays=retention)
            self._record('log_group', name, CREATED)
            return name

        if existing.get('retentionInDays') != retention:
            if not self.dry_run:
                self.logs_client.put_retention_policy(logGroupName=name, retentionInDays=retention)
            self._record('log_group', name, UPDATED)
        else:
            logger.info(f"Using existing log group: {name}")
        return name

    def ensure_execution_role(self) -> Optional[str]:
        """Role the ECS agent assumes to pull the image and write logs."""
        role_name = self.descriptor.execution_role_name

        try:
            response = self.iam_client.get_role(RoleName=role_name)
            self.execution_role_arn = response['Role']['Arn']
            logger.info(f"Using existing execution role: {role_name}")
        except ClientError as e:
            if error_code(e) != 'NoSuchEntity':
                raise
            if self.dry_run:
                self._record('iam_role', role_name, CREATED)
                return None
            response = self.iam_client.create_role(
                RoleName=role_name,
                AssumeRolePolicyDocument=json.dumps(ECS_TASKS_TRUST_POLICY),
                Description=f"ECS task execution role for {self.descriptor.app_name}",
                Tags=[{'Key': 'Project', 'Value': self.descriptor.app_name},
                      {'Key': 'ManagedBy', 'Value': MANAGED_BY}]
            )
            self.iam_client.attach_role_policy(RoleName=role_name, PolicyArn=EXECUTION_POLICY_ARN)
            self.execution_role_arn = response['Role']['Arn']
            self._record('iam_role', role_name, CREATED)
            return self.execution_role_arn

        attached = self.iam_client.list_attached_role_policies(RoleName=role_name)
        policy_arns = {p['PolicyArn'] for p in attached.get('AttachedPolicies', [])}
        if EXECUTION_POLICY_ARN not in policy_arns:
            if not self.dry_run:
                self.iam_client.attach_role_policy(RoleName=role_name, PolicyArn=EXECUTION_POLICY_ARN)
            self._record('iam_role_policy', f"{role_name}/AmazonECSTaskExecutionRolePolicy", CREATED)

        return self.execution_role_arn

    def ensure_cluster(self) -> Optional[str]:
        """Create the Fargate cluster if there is no ACTIVE one."""
        cluster_name = self.descriptor.cluster_name

        existing_cluster = self._find_existing_cluster()
        if existing_cluster:
            self.cluster_arn = existing_cluster['clusterArn']
            logger.info(f"Using existing ECS cluster: {cluster_name}")
            return self.cluster_arn

        if self.dry_run:
            self._record('ecs_cluster', cluster_name, CREATED)
            return None

        cluster_response = self.ecs_client.create_cluster(
            clusterName=cluster_name,
            capacityProviders=['FARGATE'],
            defaultCapacityProviderStrategy=[
                {'capacityProvider': 'FARGATE', 'weight': 1, 'base': 0}
            ],
            tags=[
                {'key': 'Name', 'value': cluster_name},
                {'key': 'Project', 'value': self.descriptor.app_name},
                {'key': 'ManagedBy', 'value': MANAGED_BY}
            ]
        )
        self.cluster_arn = cluster_response['cluster']['clusterArn']
        self._record('ecs_cluster', cluster_name, CREATED)
        return self.cluster_arn

    def get_cluster_info(self) -> Dict[str, Any]:
        """Get complete cluster configuration."""
        return {
            'cluster_name': self.descriptor.cluster_name,
            'cluster_arn': self.cluster_arn,
            'execution_role_arn': self.execution_role_arn,
            'log_group_name': self.log_group_name,
        }

    # Helper methods for finding existing resources

    def _find_existing_cluster(self) -> Optional[Dict[str, Any]]:
        response = self.ecs_client.describe_clusters(clusters=[self.descriptor.cluster_name])
        for cluster in response.get('clusters', []):
            if cluster['status'] == 'ACTIVE':
                return cluster
        return None

    def _find_existing_log_group(self, name: str) -> Optional[Dict[str, Any]]:
        # The prefix filter also matches longer names
        response = self.logs_client.describe_log_groups(logGroupNamePrefix=name)
        for group in response.get('logGroups', []):
            if group['logGroupName'] == name:
                return group
        return None
