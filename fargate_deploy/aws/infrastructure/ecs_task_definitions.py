"""
ECS Task Definition Builder

Builds the Fargate task definition for the descriptor's single container and
registers a new revision only when it differs from the latest ACTIVE revision
of the family. Comparison is done on the fields this tool sets; fields ECS
fills in on registration (hostPort, mountPoints, revision, ...) are ignored.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from botocore.exceptions import ClientError

from fargate_deploy.aws.infrastructure.vpc import MANAGED_BY
from fargate_deploy.aws.orchestration.results import CREATED, UPDATED, ResourceChange
from fargate_deploy.aws.utils.aws_clients import AWSClientManager, error_code
from fargate_deploy.descriptor import DeploymentDescriptor

logger = logging.getLogger(__name__)


@dataclass
class TaskDefinitionConfig:
    """Configuration for an ECS task definition."""
    family: str
    cpu: str = "256"
    memory: str = "512"
    requires_compatibilities: List[str] = field(default_factory=lambda: ['FARGATE'])
    network_mode: str = 'awsvpc'
    execution_role_arn: Optional[str] = None
    container_definitions: List[Dict[str, Any]] = field(default_factory=list)
    tags: List[Dict[str, str]] = field(default_factory=list)

    @classmethod
    def from_descriptor(cls, descriptor: DeploymentDescriptor, region: str,
                        execution_role_arn: Optional[str]) -> 'TaskDefinitionConfig':
        container = {
            'name': descriptor.container_name,
            'image': descriptor.image,
            'essential': True,
            'portMappings': [
                {'containerPort': descriptor.container_port, 'protocol': 'tcp'}
            ],
            'environment': [
                {'name': k, 'value': v} for k, v in sorted(descriptor.environment.items())
            ],
            'logConfiguration': {
                'logDriver': 'awslogs',
                'options': {
                    'awslogs-group': descriptor.log_group_name,
                    'awslogs-region': region,
                    'awslogs-stream-prefix': 'ecs'
                }
            }
        }
        if descriptor.health_check is not None:
            container['healthCheck'] = descriptor.health_check.to_ecs()

        return cls(
            family=descriptor.task_family,
            cpu=str(descriptor.cpu),
            memory=str(descriptor.memory),
            execution_role_arn=execution_role_arn,
            container_definitions=[container],
            tags=[
                {'key': 'Name', 'value': descriptor.task_family},
                {'key': 'Project', 'value': descriptor.app_name},
                {'key': 'ManagedBy', 'value': MANAGED_BY}
            ]
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to register_task_definition keyword arguments."""
        task_def = {
            'family': self.family,
            'networkMode': self.network_mode,
            'requiresCompatibilities': self.requires_compatibilities,
            'cpu': self.cpu,
            'memory': self.memory,
            'containerDefinitions': self.container_definitions
        }
        if self.execution_role_arn:
            task_def['executionRoleArn'] = self.execution_role_arn
        if self.tags:
            task_def['tags'] = self.tags
        return task_def


def normalize_task_definition(task_def: Dict[str, Any]) -> Dict[str, Any]:
    """Reduce a task definition to the fields that decide whether it changed."""
    containers = []
    for container in task_def.get('containerDefinitions', []):
        health = container.get('healthCheck')
        if health:
            health = {k: health.get(k) for k in ('command', 'interval', 'timeout', 'retries', 'startPeriod')}
        containers.append({
            'name': container.get('name'),
            'image': container.get('image'),
            'essential': container.get('essential', True),
            'portMappings': sorted(
                (p.get('containerPort'), p.get('protocol', 'tcp'))
                for p in container.get('portMappings', [])
            ),
            'environment': sorted(
                (e['name'], e.get('value', '')) for e in container.get('environment', [])
            ),
            'logConfiguration': container.get('logConfiguration'),
            'healthCheck': health or None,
        })
    return {
        'cpu': str(task_def.get('cpu')),
        'memory': str(task_def.get('memory')),
        'networkMode': task_def.get('networkMode'),
        'requiresCompatibilities': sorted(task_def.get('requiresCompatibilities', [])),
        'executionRoleArn': task_def.get('executionRoleArn'),
        'containerDefinitions': sorted(containers, key=lambda c: c['name'] or ''),
    }


class TaskDefinitionBuilder:
    """Registers task definition revisions for one family."""

    def __init__(self, descriptor: DeploymentDescriptor, clients: AWSClientManager,
                 dry_run: bool = False):
        self.descriptor = descriptor
        self.region = clients.region
        self.ecs_client = clients.ecs
        self.dry_run = dry_run
        self.changes: List[ResourceChange] = []
        self.task_definition_arn: Optional[str] = None

    def build_config(self, execution_role_arn: Optional[str]) -> TaskDefinitionConfig:
        return TaskDefinitionConfig.from_descriptor(self.descriptor, self.region, execution_role_arn)

    def ensure_task_definition(self, execution_role_arn: Optional[str]) -> Optional[str]:
        """Return the ARN of a revision matching the descriptor, registering one if needed."""
        config = self.build_config(execution_role_arn)
        desired = config.to_dict()
        current = self._find_latest_revision(config.family)

        if current is not None and normalize_task_definition(current) == normalize_task_definition(desired):
            self.task_definition_arn = current['taskDefinitionArn']
            logger.info(f"Task definition up to date: {config.family}:{current.get('revision')}")
            return self.task_definition_arn

        action = CREATED if current is None else UPDATED
        if self.dry_run:
            # No ARN until the new revision is registered
            self._record(config.family, action)
            return None

        response = self.ecs_client.register_task_definition(**desired)
        self.task_definition_arn = response['taskDefinition']['taskDefinitionArn']
        self._record(self.task_definition_arn, action)
        return self.task_definition_arn

    def _record(self, resource_id: str, action: str) -> None:
        self.changes.append(ResourceChange('task_definition', resource_id, action))
        verb = "Would have" if self.dry_run else "Have"
        logger.info(f"{verb} {action} task_definition: {resource_id}")

    def _find_latest_revision(self, family: str) -> Optional[Dict[str, Any]]:
        """Latest ACTIVE revision of the family, or None if the family is unknown."""
        try:
            response = self.ecs_client.describe_task_definition(taskDefinition=family)
        except ClientError as e:
            # ECS reports an unknown family as a generic ClientException
            if error_code(e) == 'ClientException':
                return None
            raise
        task_def = response.get('taskDefinition')
        if task_def and task_def.get('status', 'ACTIVE') == 'ACTIVE':
            return task_def
        return None
