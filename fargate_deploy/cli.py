# cli.py
import json
import logging
import subprocess
import sys
from typing import Any, Dict, Optional

import click
from botocore.exceptions import BotoCoreError, ClientError

from fargate_deploy.aws.infrastructure.ecr import ImagePublisher
from fargate_deploy.aws.monitoring.status_monitor import StatusReporter
from fargate_deploy.aws.orchestration.deploy_ecs import ConvergenceDriver
from fargate_deploy.aws.state.rollback_manager import TeardownManager
from fargate_deploy.aws.state.state_manager import StateManager
from fargate_deploy.aws.utils.aws_clients import AWSClientManager
from fargate_deploy.descriptor import DeploymentDescriptor, load_descriptor
from fargate_deploy.exceptions import DeploymentError, DescriptorValidationError, ProviderError
from fargate_deploy.settings import Settings, get_settings

logger = logging.getLogger(__name__)

EXIT_FAILURE = 1
EXIT_VALIDATION = 2
EXIT_TIMEOUT = 3
EXIT_INTERRUPTED = 130

EXIT_CODES = {
    "validation": EXIT_VALIDATION,
    "timeout": EXIT_TIMEOUT,
}


def _settings(ctx: click.Context) -> Settings:
    return ctx.obj.get("settings") or get_settings()


def _clients(ctx: click.Context) -> AWSClientManager:
    if ctx.obj.get("clients") is None:
        ctx.obj["clients"] = AWSClientManager(_settings(ctx))
    return ctx.obj["clients"]


def _state(ctx: click.Context) -> StateManager:
    if ctx.obj.get("state_manager") is None:
        ctx.obj["state_manager"] = StateManager(_settings(ctx).state_file)
    return ctx.obj["state_manager"]


def _load(path: str) -> DeploymentDescriptor:
    """Load a descriptor or exit with the validation status."""
    try:
        return load_descriptor(path)
    except DescriptorValidationError as e:
        click.echo(f"❌ Invalid descriptor {path}:", err=True)
        for error in e.errors:
            click.echo(f"  - {error}", err=True)
        sys.exit(EXIT_VALIDATION)


def _echo_changes(changes, dry_run: bool = False) -> None:
    if not changes:
        click.echo("No changes. Infrastructure matches the descriptor.")
        return
    verb = "Would have" if dry_run else "Have"
    for change in changes:
        click.echo(f"  {verb} {change.action} {change.resource_type}: {change.resource_id}")


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.pass_context
def cli(ctx, verbose):
    """Apply deployment descriptors to AWS ECS Fargate"""
    ctx.ensure_object(dict)
    settings = _settings(ctx)
    logging.basicConfig(
        level=logging.DEBUG if verbose else settings.log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    # botocore is noisy at DEBUG
    logging.getLogger("botocore").setLevel(logging.WARNING)


@cli.command()
@click.pass_context
def show_config(ctx):
    """Show current configuration"""
    settings = _settings(ctx)

    click.echo("Current Configuration:")
    click.echo(f"  AWS Region: {settings.aws_region}")
    click.echo(f"  AWS Profile: {settings.aws_profile}")
    click.echo(f"  AWS Endpoint: {settings.aws_endpoint_url}")
    click.echo(f"  Descriptor File: {settings.descriptor_file}")
    click.echo(f"  State File: {settings.state_file}")
    click.echo(f"  Poll Interval: {settings.poll_interval_seconds}s")
    click.echo(f"  Poll Timeout: {settings.poll_timeout_seconds}s")
    click.echo(f"  Log Level: {settings.log_level}")


@cli.command()
@click.argument("descriptor_file", type=click.Path(), required=False)
@click.pass_context
def validate(ctx, descriptor_file):
    """Validate a descriptor without contacting AWS"""
    path = descriptor_file or _settings(ctx).descriptor_file
    descriptor = _load(path)
    click.echo(f"✅ Descriptor valid: {descriptor.app_name} (fingerprint {descriptor.fingerprint()})")
    click.echo(f"  Image: {descriptor.image}")
    click.echo(f"  Port: {descriptor.container_port}")
    click.echo(f"  Task size: {descriptor.cpu} CPU / {descriptor.memory} MiB, {descriptor.desired_count} task(s)")


@cli.command()
@click.argument("descriptor_file", type=click.Path(), required=False)
@click.pass_context
def plan(ctx, descriptor_file):
    """Show what apply would change"""
    path = descriptor_file or _settings(ctx).descriptor_file
    descriptor = _load(path)

    driver = ConvergenceDriver(_settings(ctx), clients=_clients(ctx), state_manager=_state(ctx))
    result = driver.plan(descriptor)
    if not result.succeeded:
        click.echo(f"❌ Plan failed: {result.reason}", err=True)
        sys.exit(EXIT_CODES.get(result.error_kind, EXIT_FAILURE))

    click.echo(f"Plan for {descriptor.app_name}:")
    _echo_changes(result.changes, dry_run=True)


@cli.command()
@click.argument("descriptor_file", type=click.Path(), required=False)
@click.option("--no-wait", is_flag=True, help="Do not wait for a healthy task")
@click.option("--timeout", type=float, default=None, help="Seconds to wait for a healthy task")
@click.option("--format", "output_format", type=click.Choice(["text", "json"]), default="text",
              help="Output format")
@click.pass_context
def apply(ctx, descriptor_file, no_wait, timeout, output_format):
    """Converge AWS to the descriptor and print the endpoint"""
    path = descriptor_file or _settings(ctx).descriptor_file
    descriptor = _load(path)

    driver = ConvergenceDriver(_settings(ctx), clients=_clients(ctx), state_manager=_state(ctx))
    try:
        result = driver.apply(descriptor, wait=not no_wait, timeout=timeout)
    except KeyboardInterrupt:
        click.echo("Interrupted; resources created so far were left in place", err=True)
        sys.exit(EXIT_INTERRUPTED)

    if output_format == "json":
        click.echo(json.dumps(result.to_dict(), indent=2))
    elif result.succeeded:
        click.echo(f"✅ Applied {descriptor.app_name}")
        _echo_changes(result.changes)
        if result.endpoint:
            click.echo(f"Endpoint: {result.endpoint}")
    else:
        click.echo(f"❌ Apply failed ({result.error_kind}): {result.reason}", err=True)

    if not result.succeeded:
        sys.exit(EXIT_CODES.get(result.error_kind, EXIT_FAILURE))


def _recorded_service(state: StateManager) -> Optional[Dict[str, Any]]:
    for service_name, data in state.list_resources("ecs_service").items():
        return {"service_name": service_name, "cluster_name": data.get("cluster")}
    return None


@cli.command()
@click.argument("descriptor_file", type=click.Path(), required=False)
@click.option("--wait", is_flag=True, help="Poll until a task is healthy")
@click.option("--timeout", type=float, default=None, help="Seconds to wait with --wait")
@click.option("--format", "output_format", type=click.Choice(["text", "json"]), default="text",
              help="Output format")
@click.pass_context
def status(ctx, descriptor_file, wait, timeout, output_format):
    """Report running tasks and the endpoint"""
    reporter = StatusReporter(_clients(ctx), _settings(ctx))
    endpoint = None

    try:
        if descriptor_file:
            descriptor = _load(descriptor_file)
            if wait:
                endpoint, state = reporter.wait_for_endpoint(descriptor, timeout=timeout)
            else:
                state = reporter.snapshot(descriptor)
                _, endpoint = reporter.endpoint_if_ready(descriptor, state)
        else:
            if wait:
                click.echo("❌ --wait needs a descriptor file", err=True)
                sys.exit(EXIT_FAILURE)
            recorded = _recorded_service(_state(ctx))
            if recorded is None:
                click.echo("❌ No deployment recorded; pass a descriptor file", err=True)
                sys.exit(EXIT_FAILURE)
            state = reporter.snapshot_service(recorded["cluster_name"], recorded["service_name"])
            endpoint = _state(ctx).endpoint
    except DeploymentError as e:
        click.echo(f"❌ {e}", err=True)
        sys.exit(EXIT_CODES.get(e.kind, EXIT_FAILURE))
    except KeyboardInterrupt:
        sys.exit(EXIT_INTERRUPTED)
    except (ClientError, BotoCoreError) as e:
        error = ProviderError.from_boto(e)
        click.echo(f"❌ {error}", err=True)
        sys.exit(EXIT_FAILURE)

    click.echo(StatusReporter.render(state, output_format, endpoint=endpoint))


@cli.command()
@click.option("--repository", default=None, help="ECR repository name (defaults to the app name)")
@click.option("--tag", default="latest", help="Image tag")
@click.option("--context", "build_context", default=None, help="Docker build context")
@click.option("--dockerfile", default=None, help="Dockerfile relative to the build context")
@click.pass_context
def push_image(ctx, repository, tag, build_context, dockerfile):
    """Build the image and push it to ECR"""
    settings = _settings(ctx)
    publisher = ImagePublisher(_clients(ctx), runner=ctx.obj.get("runner") or subprocess.run)
    try:
        image_ref = publisher.publish(
            repository or settings.app_name,
            tag=tag,
            build_context=build_context or settings.docker_build_context,
            dockerfile=dockerfile or settings.dockerfile,
        )
    except DeploymentError as e:
        click.echo(f"❌ {e}", err=True)
        sys.exit(EXIT_FAILURE)

    click.echo(f"✅ Pushed {image_ref}")
    click.echo("Use this value as 'image' in the descriptor.")


@cli.command()
@click.option("--yes", is_flag=True, help="Delete without asking")
@click.option("--dry-run", is_flag=True, help="List what would be deleted")
@click.pass_context
def destroy(ctx, yes, dry_run):
    """Delete every recorded resource"""
    manager = TeardownManager(_clients(ctx), state_manager=_state(ctx))
    if not manager.can_teardown():
        click.echo("Nothing to destroy: no resources recorded.")
        return

    plan = manager.create_plan()
    click.echo("Teardown plan:")
    for action in plan:
        click.echo(f"  {action['priority']}: {action['action']} - {action['resource_id']}")

    if not dry_run and not yes:
        click.confirm("WARNING: This will delete AWS resources. Continue?", abort=True)

    results = manager.execute(dry_run=dry_run)
    if dry_run:
        click.echo(f"Would delete {len(results['success'])} resources")
        return

    click.echo(f"Deleted: {len(results['success'])}")
    click.echo(f"Failed: {len(results['failed'])}")
    if results["failed"]:
        click.echo("\nFailed deletions:")
        for item in results["failed"]:
            click.echo(f"  {item['action']}: {item['resource']} - {item.get('error', 'unknown error')}")
        sys.exit(EXIT_FAILURE)


if __name__ == "__main__":
    cli()
