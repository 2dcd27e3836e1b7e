from __future__ import annotations


class UlazyError(Exception):
    """Base class for all ulazy domain errors."""


class ManifestError(ValueError, UlazyError):
    """Raised when the manifest is malformed or declares a name twice."""


class ResolutionError(ValueError, UlazyError):
    """Raised when the manifest cannot be ordered for installation."""


class UnknownDependency(ResolutionError):
    """Raised when a dependency name has no spec in the manifest."""

    def __init__(self, name: str, dependency: str, reason: str = "") -> None:
        self.name = name
        self.dependency = dependency
        detail = f" ({reason})" if reason else ""
        super().__init__(
            f"{name} depends on unknown extension {dependency}{detail}"
        )


class CyclicDependency(ResolutionError):
    """Raised when the dependency graph contains a cycle."""

    def __init__(self, cycle: list[str]) -> None:
        self.cycle = cycle
        super().__init__(f"Dependency cycle detected: {' -> '.join(cycle)}")


class LockfileError(ValueError, UlazyError):
    """Raised when the lockfile cannot be parsed."""


class ExtensionNotFoundError(FileNotFoundError, UlazyError):
    """Raised when the store holds no extension with the requested name."""


class FetchError(RuntimeError, UlazyError):
    """Raised when retrieving an extension source tree fails."""


class TransientFetchError(FetchError):
    """Raised for network failures that are worth one more attempt."""


class FetchCancelledError(FetchError):
    """Raised when a fetch is abandoned because the host is shutting down."""


class BuildError(FetchError):
    """Raised when the post-install build step fails."""


class ActivationError(RuntimeError, UlazyError):
    """Raised (and captured) when an extension's setup entry point fails."""

    def __init__(self, name: str, message: str) -> None:
        self.name = name
        super().__init__(f"{name}: {message}")


class ExtensionNotRegisteredError(KeyError, UlazyError):
    """Raised when activating a name the activator never saw."""
