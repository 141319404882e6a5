"""Tests for settings and the AWS client manager."""
import pytest
from botocore.exceptions import ClientError
from pydantic import ValidationError

from fargate_deploy.aws.utils.aws_clients import AWSClientManager, error_code
from fargate_deploy.settings import Settings


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ("AWS_DEFAULT_REGION", "AWS_REGION", "AWS_PROFILE", "AWS_ACCESS_KEY_ID",
                 "AWS_SECRET_ACCESS_KEY", "AWS_SESSION_TOKEN", "AWS_ENDPOINT_URL", "LOG_LEVEL"):
        monkeypatch.delenv(name, raising=False)


def test_defaults():
    settings = Settings()
    assert settings.aws_region == "us-east-1"
    assert settings.state_file == ".fargate_deploy_state.json"
    assert settings.descriptor_file == "deploy.yaml"
    assert settings.poll_interval_seconds == 10.0
    assert settings.poll_timeout_seconds == 600.0


def test_region_from_environment(monkeypatch):
    monkeypatch.setenv("AWS_DEFAULT_REGION", "eu-west-1")
    assert Settings().aws_region == "eu-west-1"


def test_log_level_normalized():
    assert Settings(log_level="debug").log_level == "DEBUG"


def test_invalid_log_level():
    with pytest.raises(ValidationError):
        Settings(log_level="chatty")


@pytest.mark.parametrize("field", ["poll_interval_seconds", "poll_timeout_seconds"])
def test_poll_values_must_be_positive(field):
    with pytest.raises(ValidationError):
        Settings(**{field: 0})


def test_client_kwargs():
    settings = Settings(
        aws_region="us-west-2",
        aws_access_key_id="AKIDEXAMPLE",
        aws_secret_access_key="secret",
        aws_endpoint_url="http://localhost:4566",
    )
    assert settings.client_kwargs() == {
        "region_name": "us-west-2",
        "aws_access_key_id": "AKIDEXAMPLE",
        "aws_secret_access_key": "secret",
        "endpoint_url": "http://localhost:4566",
    }


def test_client_kwargs_without_credentials():
    assert Settings(aws_region="us-west-2").client_kwargs() == {"region_name": "us-west-2"}


class TestAWSClientManager:
    """Client caching and injection."""

    def test_factory_called_once_per_service(self):
        created = []

        def factory(service_name):
            created.append(service_name)
            return object()

        clients = AWSClientManager(Settings(aws_region="us-east-1"), client_factory=factory)
        first = clients.ecs
        assert clients.ecs is first
        clients.ec2
        assert created == ["ecs", "ec2"]

    def test_region_from_settings(self):
        clients = AWSClientManager(Settings(aws_region="ap-southeast-1"), client_factory=lambda name: None)
        assert clients.region == "ap-southeast-1"


def test_error_code():
    error = ClientError({"Error": {"Code": "NoSuchEntity", "Message": "missing"}}, "GetRole")
    assert error_code(error) == "NoSuchEntity"
    assert error_code(ValueError("boom")) == ""
