import nox

PYTHONS = ["3.10", "3.11", "3.12"]

LOCATIONS = [
    "src",
    "tests",
]


@nox.session(python=PYTHONS)
def tests(session: nox.Session) -> None:
    """Run unit tests against the in-memory broker and mocked aio-pika."""
    session.install("-e", ".[test]")
    session.run("pytest", "-m", "not integration", *session.posargs)


@nox.session(python=PYTHONS[-1])
def integration(session: nox.Session) -> None:
    """Run RabbitMQ tests in a testcontainers broker (needs docker)."""
    session.install("-e", ".[test]")
    session.run("pytest", "-m", "integration", "tests/integration", *session.posargs)


@nox.session(python=PYTHONS[-1])
def autoformat(session: nox.Session) -> None:
    """Fix lint findings and reformat."""
    session.install("ruff")
    session.run("ruff", "check", "--fix", *LOCATIONS, "noxfile.py")
    session.run("ruff", "format", *LOCATIONS, "noxfile.py")


@nox.session(python=PYTHONS[-1])
def lint(session: nox.Session) -> None:
    """Check lint and formatting without modifying files."""
    session.install("ruff")
    session.run("ruff", "check", *LOCATIONS, "noxfile.py")
    session.run("ruff", "format", "--check", *LOCATIONS, "noxfile.py")


@nox.session(python=PYTHONS)
def type_check(session: nox.Session) -> None:
    """Run mypy over the package (settings live in pyproject.toml)."""
    session.install("-e", ".[dev]")
    session.run("mypy")


@nox.session(python=PYTHONS[-1])
def arch_check(session: nox.Session) -> None:
    """Verify the runtime stays independent of its broker adapters."""
    session.install("-e", ".[test]")
    session.run("pytest", "tests/architecture", *session.posargs)


@nox.session(python=PYTHONS[-1])
def dead_code(session: nox.Session) -> None:
    """Scan for unused code using vulture."""
    session.install("vulture")
    session.run("vulture", "--min-confidence", "80", *LOCATIONS)
