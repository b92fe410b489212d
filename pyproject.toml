[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "esplorad"
version = "0.1.0"
description = "Building blocks of an Electrum/Esplora indexing server: bitcoind JSON-RPC client, configuration, chain parameters and Electrum peer discovery"
requires-python = ">=3.10"
dependencies = []
keywords = [
    "bitcoin",
    "electrum",
    "esplora",
    "bitcoind",
    "json-rpc",
    "indexer",
    "peer-discovery",
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
    "Topic :: Internet",
    "Topic :: Office/Business :: Financial",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["esplorad"]

[tool.hatch.build.targets.sdist]
include = ["esplorad", "tests", "README.md", "pyproject.toml"]

[tool.pytest.ini_options]
addopts = "-ra"
testpaths = ["tests"]

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
warn_redundant_casts = true
