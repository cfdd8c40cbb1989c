[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "cankit"
version = "0.1.0"
description = "CAN bus utilities: bit timing calculation, frame length, bus load monitoring, full-duplex testing and a broadcast manager socket server"
requires-python = ">=3.10"
dependencies = []
keywords = [
    "can",
    "can-bus",
    "socketcan",
    "bit-timing",
    "bus-load",
    "broadcast-manager",
    "embedded",
]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: Console",
    "Intended Audience :: Developers",
    "Intended Audience :: Manufacturing",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Software Development :: Embedded Systems :: Controller Area Network (CAN)",
    "Topic :: System :: Networking",
    "Topic :: Utilities",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
can-calc-bit-timing = "cankit.bittiming_cli:main"
canbusload = "cankit.busload:main"
canfdtest = "cankit.fdtest:main"
bcmserver = "cankit.bcmserver:main"

[tool.hatch.build.targets.wheel]
packages = ["cankit"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
