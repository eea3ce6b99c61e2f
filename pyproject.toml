[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "promengine"
version = "0.1.0"
description = "Query engine front end for PromQL-style queries: planning hooks, fallback, result shaping and ordering"
requires-python = ">=3.10"
dependencies = []
keywords = ["promql", "prometheus", "query engine", "monitoring", "time series"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Monitoring",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["promengine"]

[tool.pytest.ini_options]
addopts = "-ra"
