[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "hubwire"
version = "0.1.0"
description = "Hub protocol building blocks: MessagePack framing, negotiation, connections, streaming and server options"
requires-python = ">=3.10"
dependencies = [
    "msgpack",
]
keywords = ["hub", "rpc", "messagepack", "websocket", "server-sent-events", "realtime"]
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
    "Topic :: Internet :: WWW/HTTP",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["hubwire"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"
