"""ECR repository and Docker build/tag/push."""
import base64
import logging
import os
import subprocess
from typing import Any, Callable, Dict, List, Optional, Tuple

from botocore.exceptions import BotoCoreError, ClientError

from fargate_deploy.aws.infrastructure.vpc import MANAGED_BY
from fargate_deploy.aws.utils.aws_clients import AWSClientManager, error_code
from fargate_deploy.exceptions import ImagePublishError, ProviderError

logger = logging.getLogger(__name__)


class ImagePublisher:
    """Publishes a locally built image to an ECR repository."""

    def __init__(self, clients: AWSClientManager, runner: Callable[..., Any] = subprocess.run):
        self.ecr_client = clients.ecr
        self.runner = runner

    def ensure_repository(self, repository_name: str) -> Tuple[str, bool]:
        """Return (repository URI, created).

        Raises:
            ProviderError: ECR refused or failed a request
        """
        try:
            response = self.ecr_client.describe_repositories(repositoryNames=[repository_name])
            uri = response['repositories'][0]['repositoryUri']
            logger.info(f"ECR repository '{repository_name}' exists")
            return uri, False
        except ClientError as e:
            if error_code(e) != 'RepositoryNotFoundException':
                raise ProviderError.from_boto(e, resource=repository_name) from e
        except BotoCoreError as e:
            raise ProviderError.from_boto(e, resource=repository_name) from e

        try:
            response = self.ecr_client.create_repository(
                repositoryName=repository_name,
                imageScanningConfiguration={'scanOnPush': True},
                tags=[{'Key': 'Project', 'Value': repository_name},
                      {'Key': 'ManagedBy', 'Value': MANAGED_BY}]
            )
        except (ClientError, BotoCoreError) as e:
            raise ProviderError.from_boto(e, resource=repository_name) from e
        uri = response['repository']['repositoryUri']
        logger.info(f"Created ECR repository: {uri}")
        return uri, True

    def _registry_credentials(self) -> Dict[str, str]:
        try:
            token_response = self.ecr_client.get_authorization_token()
        except (ClientError, BotoCoreError) as e:
            raise ProviderError.from_boto(e) from e
        token_data = token_response['authorizationData'][0]
        token = base64.b64decode(token_data['authorizationToken']).decode('utf-8')
        username, password = token.split(':', 1)
        return {'username': username, 'password': password, 'endpoint': token_data['proxyEndpoint']}

    def _run(self, command: List[str], stdin: Optional[str] = None, cwd: Optional[str] = None) -> None:
        logger.info(f"Running: {' '.join(command[:3])} ...")
        try:
            self.runner(command, input=stdin.encode() if stdin is not None else None,
                        check=True, cwd=cwd)
        except FileNotFoundError as e:
            raise ImagePublishError(f"{command[0]} not found on PATH") from e
        except subprocess.CalledProcessError as e:
            raise ImagePublishError(f"'{' '.join(command[:2])}' exited with status {e.returncode}") from e

    def publish(self, repository_name: str, tag: str = "latest", build_context: str = ".",
                dockerfile: str = "Dockerfile") -> str:
        """Build the image, push it to ECR and return the pushed reference."""
        dockerfile_path = os.path.join(build_context, dockerfile)
        if not os.path.exists(dockerfile_path):
            raise ImagePublishError(f"Dockerfile not found: {dockerfile_path}")

        repository_uri, _ = self.ensure_repository(repository_name)
        image_ref = f"{repository_uri}:{tag}"
        local_ref = f"{repository_name}:{tag}"

        credentials = self._registry_credentials()
        self._run(["docker", "login", "--username", credentials['username'],
                   "--password-stdin", credentials['endpoint']],
                  stdin=credentials['password'])
        self._run(["docker", "build", "-t", local_ref, "-f", dockerfile_path, build_context])
        self._run(["docker", "tag", local_ref, image_ref])
        self._run(["docker", "push", image_ref])

        logger.info(f"Pushed image to ECR: {image_ref}")
        return image_ref
