[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "sensornet"
version = "0.1.0"
description = "Status and location servers with a sensor client speaking a small text protocol over TCP"
requires-python = ">=3.10"
keywords = ["sensors", "tcp", "peer-to-peer", "protocol", "networking"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Environment :: Console",
    "Intended Audience :: Developers",
    "Intended Audience :: Education",
    "Operating System :: POSIX",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Networking",
]
dependencies = []

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
sensornet-server = "sensornet.server:main"
sensornet-sensor = "sensornet.sensor:main"

[tool.hatch.build.targets.wheel]
packages = ["sensornet"]

[tool.pytest.ini_options]
addopts = "-ra"
