[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "usernet"
version = "0.1.0"
description = "User-mode networking helpers: address handling, packet pools, port forwarding, NDP and rtnetlink"
requires-python = ">=3.10"
dependencies = []
keywords = [
    "networking",
    "user-mode",
    "ipv6",
    "ndp",
    "netlink",
    "port-forwarding",
    "namespace",
]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Networking",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["usernet"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 88
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
