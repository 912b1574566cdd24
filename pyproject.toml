[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "cloudnodectl"
version = "0.1.0"
description = "Cloud node lifecycle and route reconciliation controllers for cluster nodes"
requires-python = ">=3.10"
dependencies = []
keywords = ["cluster", "cloud", "nodes", "routes", "controller", "reconciliation", "taint"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Clustering",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["cloudnodectl"]

[tool.pytest.ini_options]
addopts = "-ra"
