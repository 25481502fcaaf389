[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "ordmarket"
version = "0.1.0"
description = "Building blocks for a trustless Bitcoin ordinals marketplace: PSBT listings and purchases, mempool-protected sales, royalties, ord and Magic Eden lookups, and a live event feed."
requires-python = ">=3.10"
keywords = [
    "bitcoin",
    "ordinals",
    "inscriptions",
    "psbt",
    "marketplace",
    "multisig",
    "royalty",
    "websocket",
]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Framework :: AsyncIO",
    "Topic :: Office/Business :: Financial",
    "Topic :: Security :: Cryptography",
    "Topic :: Software Development :: Libraries :: Python Modules",
]
dependencies = [
    "cryptography>=41",
    "httpx>=0.25",
    "starlette>=0.31",
]

[project.optional-dependencies]
test = [
    "pytest>=7.4",
    "pytest-asyncio>=0.21",
    "respx>=0.20",
]

[tool.hatch.build.targets.wheel]
packages = ["ordmarket"]

[tool.hatch.build.targets.sdist]
include = ["ordmarket", "tests", "pyproject.toml"]

[tool.pytest.ini_options]
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
