"""
Deployment descriptor: declarative desired state for one containerised app.

A descriptor names exactly one image and exactly one exposed port, the task
size, the desired task count and the network placement. It is frozen once
built and consumed by a single apply cycle.
"""
import hashlib
import ipaddress
import json
import logging
import os
import re
from typing import Any, Dict, List, Mapping, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from fargate_deploy.exceptions import DescriptorValidationError

logger = logging.getLogger(__name__)

APP_NAME_PATTERN = re.compile(r"^[a-z0-9]([a-z0-9-]{0,30}[a-z0-9])?$")

# Memory (MiB) allowed for each Fargate CPU size
FARGATE_TASK_SIZES: Dict[int, List[int]] = {
    256: [512, 1024, 2048],
    512: list(range(1024, 4096 + 1, 1024)),
    1024: list(range(2048, 8192 + 1, 1024)),
    2048: list(range(4096, 16384 + 1, 1024)),
    4096: list(range(8192, 30720 + 1, 1024)),
    8192: list(range(16384, 61440 + 1, 4096)),
    16384: list(range(32768, 122880 + 1, 8192)),
}

LOG_RETENTION_DAYS = (1, 3, 5, 7, 14, 30, 60, 90, 120, 150, 180, 365,
                      400, 545, 731, 1096, 1827, 2192, 2557, 2922, 3288, 3653)


class IngressRule(BaseModel):
    """Inbound security group rule."""
    model_config = ConfigDict(frozen=True, extra="forbid")

    port: int = Field(..., ge=1, le=65535)
    protocol: str = "tcp"
    cidr: str = "0.0.0.0/0"

    @field_validator("protocol")
    @classmethod
    def validate_protocol(cls, v: str) -> str:
        v = v.lower()
        if v not in ("tcp", "udp"):
            raise ValueError("protocol must be tcp or udp")
        return v

    @field_validator("cidr")
    @classmethod
    def validate_cidr(cls, v: str) -> str:
        try:
            return str(ipaddress.IPv4Network(v, strict=False))
        except ValueError:
            raise ValueError(f"invalid IPv4 CIDR: {v}")


class NetworkPlacement(BaseModel):
    """VPC layout and security group rules for the service."""
    model_config = ConfigDict(frozen=True, extra="forbid")

    vpc_cidr: str = "10.0.0.0/16"
    subnets: List[str] = Field(default_factory=lambda: ["10.0.1.0/24"])
    assign_public_ip: bool = True
    ingress: Optional[List[IngressRule]] = None

    @field_validator("vpc_cidr")
    @classmethod
    def validate_vpc_cidr(cls, v: str) -> str:
        try:
            network = ipaddress.IPv4Network(v, strict=True)
        except ValueError:
            raise ValueError(f"invalid VPC CIDR: {v}")
        if not 16 <= network.prefixlen <= 28:
            raise ValueError("VPC CIDR prefix must be between /16 and /28")
        return str(network)

    @model_validator(mode="after")
    def validate_subnets(self) -> "NetworkPlacement":
        if not self.subnets:
            raise ValueError("at least one subnet is required")
        vpc = ipaddress.IPv4Network(self.vpc_cidr)
        parsed = []
        for cidr in self.subnets:
            try:
                subnet = ipaddress.IPv4Network(cidr, strict=True)
            except ValueError:
                raise ValueError(f"invalid subnet CIDR: {cidr}")
            if not subnet.subnet_of(vpc):
                raise ValueError(f"subnet {cidr} is outside VPC {self.vpc_cidr}")
            for other in parsed:
                if subnet.overlaps(other):
                    raise ValueError(f"subnet {cidr} overlaps {other}")
            parsed.append(subnet)
        return self


class HealthCheck(BaseModel):
    """Container health check, mirrors the ECS healthCheck block."""
    model_config = ConfigDict(frozen=True, extra="forbid")

    command: List[str]
    interval: int = Field(30, ge=5, le=300)
    timeout: int = Field(5, ge=2, le=60)
    retries: int = Field(3, ge=1, le=10)
    start_period: int = Field(0, ge=0, le=300)

    @field_validator("command")
    @classmethod
    def validate_command(cls, v: List[str]) -> List[str]:
        if not v:
            raise ValueError("health check command must not be empty")
        if v[0] not in ("CMD", "CMD-SHELL"):
            return ["CMD-SHELL", " ".join(v)]
        return v

    def to_ecs(self) -> Dict[str, Any]:
        return {
            "command": list(self.command),
            "interval": self.interval,
            "timeout": self.timeout,
            "retries": self.retries,
            "startPeriod": self.start_period,
        }


class DeploymentDescriptor(BaseModel):
    """Desired state for one Fargate service."""
    model_config = ConfigDict(frozen=True, extra="forbid")

    app_name: str
    image: str
    container_port: int = Field(..., ge=1, le=65535)
    cpu: int = 256
    memory: int = 512
    desired_count: int = Field(1, ge=0)
    network: NetworkPlacement = Field(default_factory=NetworkPlacement)
    environment: Dict[str, str] = Field(default_factory=dict)
    health_check: Optional[HealthCheck] = None
    log_retention_days: int = 7

    @field_validator("app_name")
    @classmethod
    def validate_app_name(cls, v: str) -> str:
        if not APP_NAME_PATTERN.match(v):
            raise ValueError("must be 1-32 lowercase letters, digits or hyphens, "
                             "starting and ending with a letter or digit")
        return v

    @field_validator("image", mode="before")
    @classmethod
    def validate_image(cls, v: Any) -> str:
        if isinstance(v, (list, tuple)):
            raise ValueError("exactly one image reference is allowed")
        if v is None or not str(v).strip():
            raise ValueError("image reference is required")
        v = str(v).strip()
        if any(c.isspace() for c in v):
            raise ValueError("image reference must not contain whitespace")
        # A colon after the last slash is a tag; digests are left alone
        if "@" not in v and ":" not in v.rsplit("/", 1)[-1]:
            v = f"{v}:latest"
        return v

    @field_validator("container_port", mode="before")
    @classmethod
    def validate_single_port(cls, v: Any) -> Any:
        if isinstance(v, (list, tuple)):
            raise ValueError("exactly one exposed port is allowed")
        return v

    @field_validator("environment", mode="before")
    @classmethod
    def stringify_environment(cls, v: Any) -> Any:
        if isinstance(v, Mapping):
            return {str(k): "" if val is None else str(val) for k, val in v.items()}
        return v

    @field_validator("log_retention_days")
    @classmethod
    def validate_retention(cls, v: int) -> int:
        if v not in LOG_RETENTION_DAYS:
            raise ValueError(f"must be one of {list(LOG_RETENTION_DAYS)}")
        return v

    @model_validator(mode="after")
    def validate_task_size(self) -> "DeploymentDescriptor":
        allowed = FARGATE_TASK_SIZES.get(self.cpu)
        if allowed is None:
            raise ValueError(f"cpu {self.cpu} is not a Fargate size; "
                             f"use one of {sorted(FARGATE_TASK_SIZES)}")
        if self.memory not in allowed:
            raise ValueError(f"memory {self.memory} is not valid for cpu {self.cpu}; "
                             f"allowed: {allowed[0]}-{allowed[-1]} MiB")
        return self

    # Derived resource names

    @property
    def cluster_name(self) -> str:
        return f"{self.app_name}-cluster"

    @property
    def service_name(self) -> str:
        return f"{self.app_name}-service"

    @property
    def task_family(self) -> str:
        return f"{self.app_name}-task"

    @property
    def container_name(self) -> str:
        return self.app_name

    @property
    def log_group_name(self) -> str:
        return f"/ecs/{self.app_name}"

    @property
    def execution_role_name(self) -> str:
        return f"{self.app_name}-ecs-execution-role"

    @property
    def security_group_name(self) -> str:
        return f"{self.app_name}-sg"

    @property
    def ingress_rules(self) -> List[IngressRule]:
        """Explicit rules, or the container port open to the world."""
        if self.network.ingress is not None:
            return list(self.network.ingress)
        return [IngressRule(port=self.container_port)]

    def fingerprint(self) -> str:
        """Stable hash of the desired state."""
        payload = json.dumps(self.model_dump(mode="json"), sort_keys=True)
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()[:16]


def _format_errors(error: ValidationError) -> List[str]:
    messages = []
    for item in error.errors():
        location = ".".join(str(part) for part in item.get("loc", ())) or "descriptor"
        message = item.get("msg", "invalid value")
        if message.startswith("Value error, "):
            message = message[len("Value error, "):]
        messages.append(f"{location}: {message}")
    return messages


def validate_descriptor(data: Any, source: Optional[str] = None) -> DeploymentDescriptor:
    """Validate an in-memory mapping into a descriptor."""
    if isinstance(data, DeploymentDescriptor):
        return data
    if not isinstance(data, Mapping):
        raise DescriptorValidationError(["descriptor must be a mapping"], source=source)
    try:
        return DeploymentDescriptor.model_validate(dict(data))
    except ValidationError as e:
        raise DescriptorValidationError(_format_errors(e), source=source) from e


def load_descriptor(path: str) -> DeploymentDescriptor:
    """Read a YAML or JSON descriptor file and validate it."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            text = f.read()
    except OSError as e:
        raise DescriptorValidationError([f"cannot read file: {e.strerror or e}"], source=path) from e

    try:
        if os.path.splitext(path)[1].lower() == ".json":
            data = json.loads(text)
        else:
            data = yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise DescriptorValidationError([f"cannot parse file: {e}"], source=path) from e

    descriptor = validate_descriptor(data, source=path)
    logger.debug(f"Loaded descriptor {path} (fingerprint {descriptor.fingerprint()})")
    return descriptor
