[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "sriovconf"
version = "0.1.0"
description = "SR-IOV network node configuration: policy validation and defaulting, manifest rendering, systemd unit handling, sysfs device control and vendor plugins"
requires-python = ">=3.10"
keywords = ["sriov", "sr-iov", "networking", "vf", "kubernetes", "admission", "systemd", "sysfs"]
classifiers = [
    "Development Status :: 4 - Beta",
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
dependencies = [
    "pyyaml",
    "jinja2",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["sriovconf"]

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
