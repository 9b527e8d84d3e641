[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "zigbridge"
version = "0.1.0"
description = "Zigbee Cluster Library helpers and serial protocol drivers for ZBOSS NCP and ZiGate coordinators"
requires-python = ">=3.10"
dependencies = []
keywords = ["zigbee", "zcl", "zboss", "zigate", "coordinator", "home automation"]
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
    "Topic :: Home Automation",
    "Topic :: Software Development :: Libraries :: Python Modules",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["zigbridge"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
