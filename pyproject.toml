[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "flowchain"
version = "0.1.0"
description = "Declarative, label-wired processing chains built from YAML node configurations"
requires-python = ">=3.10"
dependencies = [
    "pyyaml",
]
keywords = [
    "pipeline",
    "dataflow",
    "channels",
    "declarative",
    "yaml",
    "reconcile",
    "queueing",
    "simulation",
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
    "Topic :: Software Development :: Libraries :: Application Frameworks",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[project.scripts]
flowchain = "flowchain.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["flowchain"]

[tool.pytest.ini_options]
addopts = "-ra"
