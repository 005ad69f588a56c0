[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "csibm-operator"
version = "1.4.0"
description = "Operator logic for a bare-metal CSI driver: scheduler patching, extender readiness, RBAC validation and node operations over an in-memory cluster model"
requires-python = ">=3.10"
dependencies = [
    "pyyaml",
]
keywords = ["kubernetes", "csi", "operator", "scheduler", "rbac", "storage"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Systems Administration",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["csibm_operator"]

[tool.pytest.ini_options]
addopts = "-ra"
