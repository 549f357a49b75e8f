[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "macvz"
version = "1.0.0"
description = "Building blocks for lightweight Linux virtual machines: guest port discovery, SSH port forwarding, readiness checks, cloud-init data and image downloads"
requires-python = ">=3.10"
keywords = [
    "virtualization",
    "virtual-machine",
    "port-forwarding",
    "cloud-init",
    "vsock",
    "iptables",
]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: MacOS",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Emulators",
    "Topic :: System :: Networking",
]
dependencies = [
    "requests",
    "tqdm",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["macvz"]

[tool.hatch.build.targets.sdist]
include = [
    "macvz",
    "tests",
    "pyproject.toml",
    "README.md",
]

[tool.pytest.ini_options]
testpaths = ["tests"]
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
