[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "pike"
version = "2.4.5"
description = "Command-line helper for building, running, configuring and packing Picodata plugins"
requires-python = ">=3.11"
keywords = ["picodata", "cargo", "plugin", "cluster", "development"]
classifiers = [
    "Development Status :: 5 - Production/Stable",
    "Environment :: Console",
    "Intended Audience :: Developers",
    "Operating System :: POSIX :: Linux",
    "Operating System :: MacOS",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Software Development :: Build Tools",
]
dependencies = [
    "pyyaml",
    "jinja2",
    "tomlkit",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[project.scripts]
pike = "pike.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["pike"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py311"

[tool.mypy]
python_version = "3.11"
ignore_missing_imports = true
