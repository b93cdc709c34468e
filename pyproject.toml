[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "outboxstore"
version = "0.9.0"
description = "Storage backends for a transactional outbox: SQLite and Picodata job repositories, transactions and migrations."
requires-python = ">=3.10"
dependencies = []
keywords = ["outbox", "jobs", "queue", "sqlite", "picodata", "migrations", "dead-letter-queue"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Database",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["outboxstore"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
