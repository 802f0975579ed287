[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "chartherd"
version = "0.1.0"
description = "Check Helm releases in a Kubernetes cluster for available chart updates"
requires-python = ">=3.10"
keywords = ["helm", "kubernetes", "charts", "updates", "prometheus", "monitoring"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: Console",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Systems Administration",
    "Topic :: System :: Monitoring",
]
dependencies = [
    "requests",
    "pyyaml",
]

[project.optional-dependencies]
test = [
    "pytest",
    "responses",
]

[project.scripts]
chartherd = "chartherd.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["chartherd"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
