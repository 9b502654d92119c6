[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "webcontrib"
version = "0.1.0"
description = "ASGI WebSocket endpoints, an event-driven connection pool, Swagger UI middleware and container service lifecycles"
requires-python = ">=3.10"
dependencies = [
    "pyyaml",
]
keywords = [
    "asgi",
    "websocket",
    "socketio",
    "events",
    "broadcast",
    "swagger",
    "openapi",
    "containers",
    "middleware",
]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Framework :: AsyncIO",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Internet :: WWW/HTTP :: Dynamic Content",
    "Topic :: Software Development :: Libraries :: Python Modules",
]

[project.optional-dependencies]
test = [
    "pytest",
    "pytest-asyncio",
]

[tool.hatch.build.targets.wheel]
packages = ["webcontrib"]

[tool.hatch.build.targets.sdist]
include = [
    "webcontrib",
    "tests",
    "pyproject.toml",
    "README.md",
]

[tool.pytest.ini_options]
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
