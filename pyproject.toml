[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "tapadmin"
version = "0.1.0"
description = "WSGI admin API for replaying dead-letter events, with scoped tokens, rate limits and a replay job registry that can persist to SQLite."
requires-python = ">=3.10"
dependencies = [
    "werkzeug",
]
keywords = [
    "admin",
    "dead-letter-queue",
    "replay",
    "wsgi",
    "rate-limiting",
    "sqlite",
]
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
    "Topic :: Internet :: WWW/HTTP :: WSGI :: Application",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["tapadmin"]

[tool.hatch.build.targets.sdist]
include = [
    "tapadmin",
    "tests",
    "README.md",
    "pyproject.toml",
]

[tool.pytest.ini_options]
addopts = "-ra"
testpaths = ["tests"]
