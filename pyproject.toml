[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "lagwatch"
version = "0.1.0"
description = "Kafka consumer lag monitoring: cluster offset polling, consumer offset decoding and ZooKeeper consumer tracking"
requires-python = ">=3.10"
dependencies = []
keywords = [
    "kafka",
    "consumer",
    "lag",
    "monitoring",
    "offsets",
    "zookeeper",
]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: System Administrators",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Monitoring",
    "Typing :: Typed",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["lagwatch"]

[tool.hatch.build.targets.sdist]
include = ["lagwatch", "tests", "README.md", "pyproject.toml"]

[tool.pytest.ini_options]
addopts = "-ra"
