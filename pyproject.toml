[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "streamqueue"
version = "0.1.0"
description = "A message queue on Redis Streams with consumer groups, retries, dead-letter queues and coordinated cleanup."
requires-python = ">=3.10"
keywords = [
    "redis",
    "streams",
    "message-queue",
    "consumer-group",
    "dead-letter-queue",
    "retry",
]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Distributed Computing",
]
dependencies = [
    "redis",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[project.scripts]
topic-manager = "streamqueue.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["streamqueue"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
warn_redundant_casts = true
