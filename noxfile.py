"""nox configuration for the AlgoSync session layer.

The test sessions run once per supported Python version. Each version writes
its own coverage data file, and ``coverage-report`` combines them into one
report, so run it after ``test-coverage``.
"""

import nox
from nox_uv import session

PYTHON_VERSIONS = ["3.12", "3.13"]
"""Python versions listed in the package classifiers."""

# Default sessions.
nox.options.sessions = ["lint", "typing", "test-coverage", "coverage-report"]

# Other nox defaults.
nox.options.default_venv_backend = "uv"
nox.options.reuse_existing_virtualenvs = True


@session(name="coverage-report", uv_groups=["dev"])
def coverage_report(session: nox.Session) -> None:
    """Combine the coverage data of each Python version and report it."""
    session.run("coverage", "combine", "--keep", success_codes=[0, 1])
    session.run("coverage", "report", "--show-missing", *session.posargs)


@session(uv_groups=["lint"])
def lint(session: nox.Session) -> None:
    """Run ruff on the source, tests, and noxfile."""
    session.run("ruff", "check", "src", "tests", "noxfile.py")
    session.run("ruff", "format", "--check", "src", "tests", "noxfile.py")


@session(python=PYTHON_VERSIONS, uv_groups=["dev"])
def test(session: nox.Session) -> None:
    """Run the test suite without coverage."""
    session.run("pytest", *session.posargs)


@session(name="test-coverage", python=PYTHON_VERSIONS, uv_groups=["dev"])
def test_coverage(session: nox.Session) -> None:
    """Run the test suite with branch coverage of the library."""
    session.run(
        "pytest",
        "--cov=algosync_session",
        "--cov-branch",
        "--cov-report=",
        *session.posargs,
        env={"COVERAGE_FILE": f".coverage.{session.python}"},
    )


@session(uv_groups=["dev", "typing"])
def typing(session: nox.Session) -> None:
    """Check types of the library, its tests, and this file."""
    session.run(
        "mypy",
        *session.posargs,
        "--explicit-package-bases",
        "noxfile.py",
        "src",
        "tests",
        env={"MYPYPATH": "src"},
    )
