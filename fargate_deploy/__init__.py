"""
Descriptor-driven deployment of a containerised service to AWS ECS Fargate.

This package contains:
- Descriptor model and validation
- AWS infrastructure convergence (network, cluster, task definition, service)
- Task status polling and endpoint reporting
- Local deployment state and teardown
"""

__version__ = "0.1.0"
