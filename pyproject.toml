[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "imagesweep"
version = "1.1.0b0"
description = "Remove unused and non-compliant container images from Kubernetes nodes over the CRI."
requires-python = ">=3.10"
keywords = ["kubernetes", "cri", "containers", "images", "cleanup", "containerd", "cri-o"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: Console",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Systems Administration",
]
dependencies = [
    "grpcio",
    "pyyaml",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[project.scripts]
imagesweep-remover = "imagesweep.remover:main"
imagesweep-collector = "imagesweep.collector:main"

[tool.hatch.build.targets.wheel]
packages = ["imagesweep"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
