[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "gamification"
version = "0.1.0"
description = "Energy leaderboard service that ranks zones from a public ledger stream of finalized epochs."
requires-python = ">=3.10"
dependencies = []
keywords = ["leaderboard", "gamification", "energy", "ledger", "metrics", "wsgi"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Games/Entertainment",
    "Topic :: Internet :: WWW/HTTP :: WSGI :: Application",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
gamification-sanity = "gamification.sanity:main"

[tool.hatch.build.targets.wheel]
packages = ["gamification"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
