pytest_plugins = [
    "tests.fixtures.aws_fixtures",
    "tests.fixtures.descriptor_fixtures",
    "tests.fixtures.fargate_tasks",
]
