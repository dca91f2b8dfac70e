[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "rmqmonitor"
version = "0.1.0"
description = "Watch RabbitMQ queues through the management API and log alerts for stuck queues"
requires-python = ">=3.10"
keywords = ["rabbitmq", "monitoring", "queues", "management-api", "alerting"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: Console",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Monitoring",
]
dependencies = [
    "pyyaml>=6.0",
    "requests>=2.28",
]

[project.optional-dependencies]
test = [
    "pytest>=7.0",
    "responses>=0.23",
]

[project.scripts]
rmqmonitor = "rmqmonitor.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["rmqmonitor"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
