[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "csiaddons-sidecar"
version = "0.1.0"
description = "Sidecar services that relay CSI-Addons operations from a Kubernetes controller to a CSI driver over gRPC"
requires-python = ">=3.10"
dependencies = [
    "grpcio",
]
keywords = [
    "csi",
    "csi-addons",
    "kubernetes",
    "storage",
    "grpc",
    "sidecar",
    "replication",
    "reclaim-space",
    "network-fence",
]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: System Administrators",
    "Intended Audience :: Developers",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Filesystems",
    "Topic :: System :: Distributed Computing",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["csiaddons_sidecar"]

[tool.hatch.build.targets.sdist]
include = [
    "csiaddons_sidecar",
    "tests",
]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP", "SIM"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
warn_redundant_casts = true
ignore_missing_imports = true
