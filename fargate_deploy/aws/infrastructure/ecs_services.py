"""ECS service for the descriptor's Fargate task."""
import logging
from typing import Any, Dict, List, Optional

from fargate_deploy.aws.infrastructure.vpc import MANAGED_BY
from fargate_deploy.aws.orchestration.results import CREATED, UPDATED, ResourceChange
from fargate_deploy.aws.utils.aws_clients import AWSClientManager
from fargate_deploy.descriptor import DeploymentDescriptor
from fargate_deploy.exceptions import ProviderError

logger = logging.getLogger(__name__)


class ECSServiceManager:
    """Manager for the long-running Fargate service."""

    def __init__(self, descriptor: DeploymentDescriptor, clients: AWSClientManager,
                 dry_run: bool = False):
        self.descriptor = descriptor
        self.ecs_client = clients.ecs
        self.dry_run = dry_run
        self.changes: List[ResourceChange] = []
        self.cluster_name = descriptor.cluster_name
        self.service_name = descriptor.service_name
        self.service_arn: Optional[str] = None

    def _record(self, resource_id: str, action: str) -> None:
        self.changes.append(ResourceChange('ecs_service', resource_id, action))
        verb = "Would have" if self.dry_run else "Have"
        logger.info(f"{verb} {action} ecs_service: {resource_id}")

    def network_configuration(self, network_config: Dict[str, Any]) -> Dict[str, Any]:
        return {
            'awsvpcConfiguration': {
                'subnets': list(network_config.get('subnet_ids') or []),
                'securityGroups': [network_config['security_group_id']]
                                  if network_config.get('security_group_id') else [],
                'assignPublicIp': 'ENABLED' if self.descriptor.network.assign_public_ip else 'DISABLED'
            }
        }

    def ensure_service(self, task_definition_arn: Optional[str], network_config: Dict[str, Any],
                       cluster_exists: bool = True) -> Optional[str]:
        """Create the service or update the fields that drifted from the descriptor."""
        desired_network = self.network_configuration(network_config)
        desired_count = self.descriptor.desired_count

        existing_service = self._find_existing_service() if cluster_exists else None
        if existing_service is None:
            if self.dry_run:
                self._record(self.service_name, CREATED)
                return None

            service_response = self.ecs_client.create_service(
                cluster=self.cluster_name,
                serviceName=self.service_name,
                taskDefinition=task_definition_arn,
                desiredCount=desired_count,
                launchType='FARGATE',
                networkConfiguration=desired_network,
                deploymentConfiguration={
                    'maximumPercent': 200,
                    'minimumHealthyPercent': 100
                },
                propagateTags='SERVICE',
                tags=[
                    {'key': 'Name', 'value': self.service_name},
                    {'key': 'Project', 'value': self.descriptor.app_name},
                    {'key': 'ManagedBy', 'value': MANAGED_BY}
                ]
            )
            self.service_arn = service_response['service']['serviceArn']
            self._record(self.service_name, CREATED)
            return self.service_arn

        self.service_arn = existing_service['serviceArn']
        updates: Dict[str, Any] = {}
        if task_definition_arn and existing_service.get('taskDefinition') != task_definition_arn:
            updates['taskDefinition'] = task_definition_arn
        if existing_service.get('desiredCount') != desired_count:
            updates['desiredCount'] = desired_count
        if not self._same_network(existing_service.get('networkConfiguration', {}), desired_network):
            updates['networkConfiguration'] = desired_network

        # In a dry run a new task definition has no ARN yet
        if self.dry_run and task_definition_arn is None:
            updates.setdefault('taskDefinition', '(new revision)')

        if not updates:
            logger.info(f"ECS service up to date: {self.service_name}")
            return self.service_arn

        logger.info(f"Updating ECS service {self.service_name}: {', '.join(sorted(updates))}")
        if not self.dry_run:
            self.ecs_client.update_service(
                cluster=self.cluster_name,
                service=self.service_name,
                **updates
            )
        self._record(self.service_name, UPDATED)
        return self.service_arn

    @staticmethod
    def _same_network(current: Dict[str, Any], desired: Dict[str, Any]) -> bool:
        cur = current.get('awsvpcConfiguration', {})
        want = desired['awsvpcConfiguration']
        return (sorted(cur.get('subnets', [])) == sorted(want['subnets'])
                and sorted(cur.get('securityGroups', [])) == sorted(want['securityGroups'])
                and cur.get('assignPublicIp', 'DISABLED') == want['assignPublicIp'])

    def get_service_info(self) -> Dict[str, Any]:
        return {
            'cluster_name': self.cluster_name,
            'service_name': self.service_name,
            'service_arn': self.service_arn,
        }

    def _find_existing_service(self) -> Optional[Dict[str, Any]]:
        """ACTIVE service, None if missing. A draining service blocks re-creation."""
        response = self.ecs_client.describe_services(
            cluster=self.cluster_name,
            services=[self.service_name]
        )
        for service in response.get('services', []):
            if service['status'] == 'ACTIVE':
                return service
            if service['status'] == 'DRAINING':
                raise ProviderError(
                    operation="DescribeServices",
                    code="ServiceDraining",
                    message="service is still draining from a previous delete; re-run apply once it is INACTIVE",
                    resource=self.service_name,
                )
        return None
