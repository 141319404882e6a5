"""Descriptor fixtures for tests."""
import pytest

from fargate_deploy.descriptor import DeploymentDescriptor

TEST_APP = "chatbot"
TEST_IMAGE = "123456789012.dkr.ecr.us-east-1.amazonaws.com/chatbot:v1"
TEST_PORT = 8080
TEST_CLUSTER = f"{TEST_APP}-cluster"
TEST_SERVICE = f"{TEST_APP}-service"


@pytest.fixture
def descriptor_data():
    return {
        "app_name": TEST_APP,
        "image": TEST_IMAGE,
        "container_port": TEST_PORT,
        "desired_count": 1,
        "network": {
            "vpc_cidr": "10.0.0.0/16",
            "subnets": ["10.0.1.0/24", "10.0.2.0/24"],
        },
        "environment": {"MODEL_NAME": "small", "MAX_TOKENS": 256},
    }


@pytest.fixture
def descriptor(descriptor_data):
    return DeploymentDescriptor(**descriptor_data)
