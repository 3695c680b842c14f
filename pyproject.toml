[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "tlogkit"
version = "0.1.0"
description = "Building blocks for a transparency log: sharded entry IDs, log ranges, signers, attestation storage and entry types"
requires-python = ">=3.10"
keywords = [
    "transparency-log",
    "sharding",
    "signing",
    "timestamping",
    "in-toto",
    "dsse",
    "alpine",
    "helm",
    "x509",
    "rfc8785",
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
    "Topic :: Security",
    "Topic :: Security :: Cryptography",
]
dependencies = [
    "cryptography",
    "pyyaml",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["tlogkit"]

[tool.pytest.ini_options]
testpaths = ["tests"]
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
