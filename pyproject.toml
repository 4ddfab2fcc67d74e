[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "tlvnet"
version = "0.1.0"
description = "Length-prefixed TCP messaging, echo, HTTP and WebSocket servers built on asyncio"
requires-python = ">=3.10"
keywords = ["tcp", "tlv", "framing", "asyncio", "echo-server", "websocket", "http"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Framework :: AsyncIO",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Internet",
    "Topic :: System :: Networking",
]
dependencies = [
    "websockets",
]

[project.optional-dependencies]
test = [
    "pytest",
    "pytest-asyncio",
]

[project.scripts]
tlvnet-server = "tlvnet.server:main"
tlvnet-client = "tlvnet.client:main"
tlvnet-echo = "tlvnet.echo:main"
tlvnet-http = "tlvnet.http_server:main"
tlvnet-ws = "tlvnet.websocket_server:main"

[tool.hatch.build.targets.wheel]
packages = ["tlvnet"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
