[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "segnetgraph"
version = "0.1.0"
description = "Directed layer graphs for semantic segmentation networks, with pooling, resizing, spatial prior, upscaling and sum layers and a gradient descent / QuickProp trainer"
requires-python = ">=3.10"
keywords = ["neural network", "semantic segmentation", "computation graph", "quickprop", "numpy"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Science/Research",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Scientific/Engineering :: Artificial Intelligence",
]
dependencies = [
    "numpy",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["segnetgraph"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
