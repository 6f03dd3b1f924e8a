"""Error taxonomy shared by the graph builder, fetcher, scheduler, and policy resolver."""

from __future__ import annotations

from collections.abc import Iterable, Sequence


class OrchestratorError(RuntimeError):
    """Base error for all orchestration failures."""


class ManifestError(OrchestratorError, ValueError):
    """Raised when a manifest document is malformed."""

    def __init__(self, path: str, message: str) -> None:
        self.path = path
        self.detail = message
        super().__init__(f"{path}: {message}" if path else message)


# Structural errors: raised before any build work begins.


class DuplicateModuleName(OrchestratorError):
    """Two modules share the same name."""

    def __init__(self, module: str, *, positions: Sequence[int] = ()) -> None:
        self.module = module
        self.positions = tuple(positions)
        where = f" (positions {', '.join(str(p) for p in self.positions)})" if positions else ""
        super().__init__(f"duplicate module name {module!r}{where}")


class DanglingDependency(OrchestratorError):
    """A module references a dependency that is not declared in the manifest."""

    def __init__(self, module: str, dependency: str) -> None:
        self.module = module
        self.dependency = dependency
        super().__init__(f"module {module!r} depends on unknown module {dependency!r}")


class CyclicDependency(OrchestratorError):
    """The dependency relation contains a cycle."""

    def __init__(self, cycle: Iterable[str]) -> None:
        self.cycle: tuple[str, ...] = tuple(cycle)
        self.module = self.cycle[0] if self.cycle else ""
        super().__init__(f"dependency cycle detected: {' -> '.join(self.cycle)}")


# Source acquisition errors: scoped to one module.


class FetchError(OrchestratorError):
    """Transport failure, or network access denied on a cache miss."""

    def __init__(self, message: str, *, url: str, module: str | None = None) -> None:
        self.url = url
        self.module = module
        self.detail = message
        prefix = f"[{module}] " if module else ""
        super().__init__(f"{prefix}fetch failed for {url}: {message}")

    def for_module(self, module: str) -> FetchError:
        return FetchError(self.detail, url=self.url, module=module)


class IntegrityMismatch(OrchestratorError):
    """Fetched content does not match the declared digest or commit pin."""

    def __init__(
        self,
        *,
        url: str,
        expected: str,
        actual: str,
        module: str | None = None,
    ) -> None:
        self.url = url
        self.expected = expected
        self.actual = actual
        self.module = module
        prefix = f"[{module}] " if module else ""
        super().__init__(f"{prefix}integrity mismatch for {url}: expected {expected}, got {actual}")

    def for_module(self, module: str) -> IntegrityMismatch:
        return IntegrityMismatch(
            url=self.url, expected=self.expected, actual=self.actual, module=module
        )


# Execution errors: scoped to one module; test fatality is policy-driven.


class BuildFailure(OrchestratorError):
    """A build step exited non-zero or the adapter reported an error."""

    def __init__(
        self,
        module: str,
        message: str,
        *,
        command: Sequence[str] = (),
        returncode: int | None = None,
        output_tail: str = "",
    ) -> None:
        self.module = module
        self.command = tuple(command)
        self.returncode = returncode
        self.output_tail = output_tail
        super().__init__(f"[{module}] {message}")


class TestFailure(OrchestratorError):
    """A module's test step failed."""

    __test__ = False

    def __init__(
        self,
        module: str,
        message: str,
        *,
        command: Sequence[str] = (),
        returncode: int | None = None,
        output_tail: str = "",
    ) -> None:
        self.module = module
        self.command = tuple(command)
        self.returncode = returncode
        self.output_tail = output_tail
        super().__init__(f"[{module}] {message}")


class BuildCancelled(OrchestratorError):
    """The global cancellation signal interrupted a module."""

    def __init__(self, module: str) -> None:
        self.module = module
        super().__init__(f"[{module}] build cancelled")


# Policy resolution errors: scoped to the manifest.


class ConflictingGrant(OrchestratorError):
    """One declaration context assigns two different values to the same key."""

    def __init__(self, key: str, values: Sequence[str], *, context: str) -> None:
        self.key = key
        self.values = tuple(values)
        self.context = context
        rendered = ", ".join(repr(value) for value in self.values)
        super().__init__(f"conflicting {context} grant for {key!r}: {rendered}")


__all__ = [
    "BuildCancelled",
    "BuildFailure",
    "ConflictingGrant",
    "CyclicDependency",
    "DanglingDependency",
    "DuplicateModuleName",
    "FetchError",
    "IntegrityMismatch",
    "ManifestError",
    "OrchestratorError",
    "TestFailure",
]
