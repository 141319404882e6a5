"""Descriptor-driven convergence of a public Fargate service."""
import logging
import threading
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Union

from botocore.exceptions import BotoCoreError, ClientError

from fargate_deploy.aws.infrastructure.ecs import EXECUTION_POLICY_ARN, ECSClusterManager
from fargate_deploy.aws.infrastructure.ecs_services import ECSServiceManager
from fargate_deploy.aws.infrastructure.ecs_task_definitions import TaskDefinitionBuilder
from fargate_deploy.aws.infrastructure.vpc import VPCNetworkBuilder
from fargate_deploy.aws.monitoring.status_monitor import StatusReporter
from fargate_deploy.aws.orchestration.results import ApplyResult, ResourceChange
from fargate_deploy.aws.state.state_manager import StateManager
from fargate_deploy.aws.utils.aws_clients import AWSClientManager
from fargate_deploy.descriptor import DeploymentDescriptor, validate_descriptor
from fargate_deploy.exceptions import (
    DeploymentError,
    DescriptorValidationError,
    PollCancelled,
    ProviderError,
    StateConflictError,
    StatusTimeoutError,
)
from fargate_deploy.settings import Settings, get_settings
from fargate_deploy.utils.decorators import log_operation

logger = logging.getLogger(__name__)

DescriptorInput = Union[DeploymentDescriptor, Mapping[str, Any]]


class ConvergenceDriver:
    """Reconciles AWS to match a deployment descriptor.

    Each step finds what already exists, creates what is missing and updates
    what drifted, so an interrupted apply is recovered by applying again.
    """

    def __init__(self, settings: Optional[Settings] = None,
                 clients: Optional[AWSClientManager] = None,
                 state_manager: Optional[StateManager] = None,
                 reporter: Optional[StatusReporter] = None):
        self.settings = settings or get_settings()
        self._clients = clients
        self._state_manager = state_manager
        self._reporter = reporter
        self.changes: List[ResourceChange] = []
        self.resources: Dict[str, Any] = {}

    # Lazily built so that a rejected descriptor never touches AWS

    @property
    def clients(self) -> AWSClientManager:
        if self._clients is None:
            self._clients = AWSClientManager(self.settings)
        return self._clients

    @property
    def state_manager(self) -> StateManager:
        if self._state_manager is None:
            self._state_manager = StateManager(self.settings.state_file)
        return self._state_manager

    @property
    def reporter(self) -> StatusReporter:
        if self._reporter is None:
            self._reporter = StatusReporter(self.clients, self.settings)
        return self._reporter

    def apply(self, descriptor: DescriptorInput, wait: bool = True, timeout: Optional[float] = None,
              cancel_event: Optional[threading.Event] = None) -> ApplyResult:
        """Converge AWS to the descriptor and optionally wait for an endpoint.

        Always returns exactly one ApplyResult; errors are reported through
        its ``error_kind`` and ``reason`` rather than raised.
        """
        start_time = time.monotonic()
        self.changes = []
        self.resources = {}

        try:
            descriptor = validate_descriptor(descriptor)
        except DescriptorValidationError as e:
            logger.error(f"❌ {e}")
            return ApplyResult.failure("validation", str(e), duration_seconds=time.monotonic() - start_time)

        app_name = descriptor.app_name
        deployment_id = f"{app_name}-{datetime.now(timezone.utc).strftime('%Y%m%d%H%M%S')}"
        logger.info(f"🚀 Applying descriptor for '{app_name}' (fingerprint {descriptor.fingerprint()})")
        try:
            self.state_manager.start_deployment(deployment_id, app_name, descriptor.fingerprint())
        except StateConflictError as e:
            # The other app's state is left untouched
            logger.error(f"❌ {e}")
            return ApplyResult.failure(e.kind, str(e), app_name=app_name,
                                       duration_seconds=time.monotonic() - start_time)

        def failed(kind: str, reason: str, cluster_state: Any = None) -> ApplyResult:
            self.state_manager.mark_deployment_failed(reason, kind)
            return ApplyResult.failure(
                kind, reason,
                app_name=app_name,
                changes=list(self.changes),
                resources=dict(self.resources),
                cluster_state=cluster_state,
                duration_seconds=time.monotonic() - start_time,
            )

        try:
            self._converge(descriptor, dry_run=False)
        except (ClientError, BotoCoreError) as e:
            error = ProviderError.from_boto(e)
            logger.error(f"❌ {error}")
            return failed(error.kind, str(error))
        except DeploymentError as e:
            logger.error(f"❌ {e}")
            return failed(e.kind, str(e))
        except KeyboardInterrupt:
            self.state_manager.mark_deployment_failed("apply interrupted", PollCancelled.kind)
            raise
        except Exception as e:
            logger.exception(f"❌ Apply for '{app_name}' failed unexpectedly")
            return failed(DeploymentError.kind, f"{type(e).__name__}: {e}")

        endpoint = None
        cluster_state = None
        if wait:
            try:
                endpoint, cluster_state = self.reporter.wait_for_endpoint(
                    descriptor, timeout=timeout, cancel_event=cancel_event)
            except StatusTimeoutError as e:
                logger.error(f"⏰ {e}")
                return failed(e.kind, str(e), cluster_state=e.last_state)
            except PollCancelled as e:
                logger.warning("Status poll cancelled; resources were left in place")
                return failed(e.kind, str(e))
            except (ClientError, BotoCoreError) as e:
                error = ProviderError.from_boto(e)
                logger.error(f"❌ {error}")
                return failed(error.kind, str(error))
            except DeploymentError as e:
                logger.error(f"❌ {e}")
                return failed(e.kind, str(e))
            except KeyboardInterrupt:
                self.state_manager.mark_deployment_failed("status poll interrupted", PollCancelled.kind)
                raise
            except Exception as e:
                logger.exception(f"❌ Status poll for '{app_name}' failed unexpectedly")
                return failed(DeploymentError.kind, f"{type(e).__name__}: {e}")

        self.state_manager.mark_deployment_complete(endpoint)
        result = ApplyResult(
            status="success",
            app_name=app_name,
            endpoint=endpoint,
            changes=list(self.changes),
            resources=dict(self.resources),
            cluster_state=cluster_state,
            duration_seconds=time.monotonic() - start_time,
        )
        self._log_summary(result)
        return result

    def plan(self, descriptor: DescriptorInput) -> ApplyResult:
        """Report what apply would change, using read-only calls only."""
        start_time = time.monotonic()
        self.changes = []
        self.resources = {}
        try:
            descriptor = validate_descriptor(descriptor)
        except DescriptorValidationError as e:
            return ApplyResult.failure("validation", str(e), duration_seconds=time.monotonic() - start_time)

        try:
            self._converge(descriptor, dry_run=True)
        except (ClientError, BotoCoreError) as e:
            error = ProviderError.from_boto(e)
            return ApplyResult.failure(error.kind, str(error), app_name=descriptor.app_name,
                                       changes=list(self.changes))
        except DeploymentError as e:
            return ApplyResult.failure(e.kind, str(e), app_name=descriptor.app_name,
                                       changes=list(self.changes))
        except Exception as e:
            logger.exception(f"❌ Plan for '{descriptor.app_name}' failed unexpectedly")
            return ApplyResult.failure(DeploymentError.kind, f"{type(e).__name__}: {e}",
                                       app_name=descriptor.app_name, changes=list(self.changes))

        return ApplyResult(
            status="success",
            app_name=descriptor.app_name,
            changes=list(self.changes),
            resources=dict(self.resources),
            duration_seconds=time.monotonic() - start_time,
        )

    def _converge(self, descriptor: DeploymentDescriptor, dry_run: bool) -> None:
        """Run every step in dependency order."""
        network_config = self._setup_network(descriptor, dry_run)
        cluster_info = self._setup_cluster(descriptor, dry_run)
        task_definition_arn = self._setup_task_definition(
            descriptor, cluster_info['execution_role_arn'], dry_run)
        self._setup_service(descriptor, task_definition_arn, network_config,
                            cluster_info['cluster_arn'] is not None, dry_run)

    def _record(self, dry_run: bool, resource_type: str, resource_id: Optional[str],
                data: Optional[Dict[str, Any]] = None) -> None:
        if dry_run or not resource_id:
            return
        self.state_manager.record_resource(resource_type, resource_id, data)

    @log_operation("VPC and networking setup")
    def _setup_network(self, descriptor: DeploymentDescriptor, dry_run: bool) -> Dict[str, Any]:
        builder = VPCNetworkBuilder(descriptor, self.clients, dry_run=dry_run)
        try:
            network_config = builder.build()
        finally:
            self.changes.extend(builder.changes)

        vpc_id = network_config['vpc_id']
        self._record(dry_run, 'vpc', vpc_id, {'cidr': descriptor.network.vpc_cidr})
        self._record(dry_run, 'internet_gateway', network_config['internet_gateway_id'], {'vpc_id': vpc_id})
        for subnet_id in network_config['subnet_ids']:
            self._record(dry_run, 'subnet', subnet_id, {'vpc_id': vpc_id})
        self._record(dry_run, 'route_table', network_config['route_table_id'], {'vpc_id': vpc_id})
        self._record(dry_run, 'security_group', network_config['security_group_id'],
                     {'vpc_id': vpc_id, 'name': descriptor.security_group_name})

        self.resources['network'] = network_config
        return network_config

    @log_operation("ECS cluster, execution role and log group setup")
    def _setup_cluster(self, descriptor: DeploymentDescriptor, dry_run: bool) -> Dict[str, Any]:
        manager = ECSClusterManager(descriptor, self.clients, dry_run=dry_run)
        try:
            manager.ensure_log_group()
            self._record(dry_run, 'log_group', descriptor.log_group_name)

            manager.ensure_execution_role()
            self._record(dry_run, 'iam_role', descriptor.execution_role_name,
                         {'arn': manager.execution_role_arn, 'policy_arn': EXECUTION_POLICY_ARN})

            manager.ensure_cluster()
            self._record(dry_run, 'ecs_cluster', descriptor.cluster_name, {'arn': manager.cluster_arn})
        finally:
            self.changes.extend(manager.changes)

        cluster_info = manager.get_cluster_info()
        self.resources['cluster'] = cluster_info
        return cluster_info

    @log_operation("Task definition registration")
    def _setup_task_definition(self, descriptor: DeploymentDescriptor,
                               execution_role_arn: Optional[str], dry_run: bool) -> Optional[str]:
        builder = TaskDefinitionBuilder(descriptor, self.clients, dry_run=dry_run)
        try:
            task_definition_arn = builder.ensure_task_definition(execution_role_arn)
        finally:
            self.changes.extend(builder.changes)

        self._record(dry_run, 'task_definition', task_definition_arn, {'family': descriptor.task_family})
        self.resources['task_definition_arn'] = task_definition_arn
        return task_definition_arn

    @log_operation("ECS service deployment")
    def _setup_service(self, descriptor: DeploymentDescriptor, task_definition_arn: Optional[str],
                       network_config: Dict[str, Any], cluster_exists: bool, dry_run: bool) -> Dict[str, Any]:
        manager = ECSServiceManager(descriptor, self.clients, dry_run=dry_run)
        try:
            manager.ensure_service(task_definition_arn, network_config, cluster_exists=cluster_exists)
        finally:
            self.changes.extend(manager.changes)

        self._record(dry_run, 'ecs_service', descriptor.service_name,
                     {'cluster': descriptor.cluster_name, 'arn': manager.service_arn})
        service_info = manager.get_service_info()
        self.resources['service'] = service_info
        return service_info

    def _log_summary(self, result: ApplyResult) -> None:
        logger.info("=" * 60)
        logger.info("🎉 DEPLOYMENT SUMMARY")
        logger.info("=" * 60)
        logger.info(f"App: {result.app_name}")
        logger.info(f"Changes: {len(result.changes)}")
        for change in result.changes:
            logger.info(f"  {change.action}: {change.resource_type} {change.resource_id}")
        logger.info(f"Endpoint: {result.endpoint or 'N/A'}")
        logger.info("=" * 60)
