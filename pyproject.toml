[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "memoria"
version = "0.1.0"
description = "Memory server for a teaching operating-system emulator: partitions, thread contexts and instructions over TCP"
requires-python = ">=3.10"
dependencies = []
keywords = ["memory", "partitions", "first-fit", "best-fit", "worst-fit", "emulator", "operating-systems"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Education",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Emulators",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
memoria = "memoria.server:main"

[tool.hatch.build.targets.wheel]
packages = ["memoria"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
