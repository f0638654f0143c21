[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "binlogscope"
version = "0.1.0"
description = "Find the SQL statements recorded in MySQL binary logs within a time window"
requires-python = ">=3.10"
dependencies = [
    "pymysql",
    "tqdm",
]
keywords = ["mysql", "aurora", "binlog", "replication", "audit", "sql"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: Console",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
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
test = [
    "pytest",
]

[project.scripts]
binlogscope = "binlogscope.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["binlogscope"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
