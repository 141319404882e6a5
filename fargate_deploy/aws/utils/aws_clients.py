"""AWS client management."""
import logging
from typing import Any, Callable, Dict, Optional

import boto3

from fargate_deploy.settings import Settings, get_settings

logger = logging.getLogger(__name__)

ClientFactory = Callable[[str], Any]


class AWSClientManager:
    """Creates and caches one boto3 client per AWS service."""

    def __init__(self, settings: Optional[Settings] = None,
                 client_factory: Optional[ClientFactory] = None):
        self.settings = settings or get_settings()
        self.region = self.settings.aws_region
        self._client_factory = client_factory
        self._clients: Dict[str, Any] = {}
        self._session = None

        logger.debug(f"Initializing AWSClientManager (region={self.region}, "
                     f"endpoint={self.settings.aws_endpoint_url})")

    def _get_session(self):
        if self._session is None:
            if self.settings.aws_profile:
                self._session = boto3.Session(profile_name=self.settings.aws_profile)
                logger.debug(f"Using AWS profile: {self.settings.aws_profile}")
            else:
                self._session = boto3.Session()
        return self._session

    def get_client(self, service_name: str) -> Any:
        """Get or create an AWS service client."""
        if service_name in self._clients:
            return self._clients[service_name]

        if self._client_factory is not None:
            client = self._client_factory(service_name)
        else:
            kwargs = self.settings.client_kwargs()
            if self.settings.aws_profile:
                # Profile credentials win over static keys
                kwargs.pop("aws_access_key_id", None)
                kwargs.pop("aws_secret_access_key", None)
                kwargs.pop("aws_session_token", None)
            client = self._get_session().client(service_name, **kwargs)

        self._clients[service_name] = client
        logger.debug(f"Created {service_name} client")
        return client

    @property
    def ec2(self):
        return self.get_client("ec2")

    @property
    def ecs(self):
        return self.get_client("ecs")

    @property
    def iam(self):
        return self.get_client("iam")

    @property
    def logs(self):
        return self.get_client("logs")

    @property
    def ecr(self):
        return self.get_client("ecr")


def error_code(error: Exception) -> str:
    """Return the AWS error code of a ClientError, or an empty string."""
    response = getattr(error, "response", None) or {}
    return response.get("Error", {}).get("Code", "")
