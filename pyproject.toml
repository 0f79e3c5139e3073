[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "txindex"
version = "0.1.0"
description = "Key-value storage schema, history queries and blk*.dat parsing for a blockchain transaction index"
requires-python = ">=3.10"
dependencies = []
keywords = ["bitcoin", "index", "blockchain", "utxo", "key-value", "history", "sqlite"]
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
    "Typing :: Typed",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["txindex"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
