[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "sngcap"
version = "0.1.0"
description = "SIP capture building blocks: IP/TCP reassembly, WebSocket unwrapping and HEP/EEP encapsulation"
requires-python = ">=3.10"
dependencies = [
    "psutil",
]
keywords = ["sip", "voip", "capture", "hep", "eep", "reassembly", "websocket"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Intended Audience :: Telecommunications Industry",
    "Operating System :: POSIX",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Networking :: Monitoring",
    "Topic :: Communications :: Telephony",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["sngcap"]

[tool.pytest.ini_options]
addopts = "-ra"
testpaths = ["tests"]

[tool.ruff]
line-length = 100
target-version = "py310"
