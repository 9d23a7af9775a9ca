from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Sequence

ARROW = " → "


def format_chain(names: Sequence[str]) -> str:
    return ARROW.join(names)


class SkillsError(RuntimeError):
    pass


class ConfigurationError(SkillsError):
    def __init__(self, field: str, reason: str) -> None:
        self.field = field
        self.reason = reason
        super().__init__(f"Invalid configuration for {field}: {reason}")


@dataclass(frozen=True)
class RegistryHTTPError(SkillsError):
    status_code: int
    body: str

    def __str__(self) -> str:  # pragma: no cover
        return f"HTTP {self.status_code}: {self.body}"


class TransientError(SkillsError):
    """A failure worth retrying: timeouts, connection resets, 5xx responses."""


class DependencyError(SkillsError):
    """Base for failures found while resolving the dependency graph."""

    def __init__(self, message: str, chain: Sequence[str]) -> None:
        self.chain = list(chain)
        super().__init__(message)


class DependencyNotFound(DependencyError):
    def __init__(self, name: str, chain: Sequence[str]) -> None:
        self.name = name
        msg = f"Dependency {name!r} not found in registry."
        if len(chain) > 1:
            msg += f" Required by: {format_chain(chain[:-1])}"
        super().__init__(msg, chain)


class CircularDependencyError(DependencyError):
    def __init__(self, path: Sequence[str]) -> None:
        self.path = list(path)
        super().__init__(f"Circular dependency detected: {format_chain(path)}", path)


class DependencyDepthExceeded(DependencyError):
    def __init__(self, chain: Sequence[str], max_depth: int) -> None:
        self.max_depth = max_depth
        super().__init__(
            f"Dependency depth limit exceeded (max: {max_depth} levels): {format_chain(chain)}",
            chain,
        )


class NetworkError(SkillsError):
    def __init__(self, message: str, *, target: str | None = None, chain: Sequence[str] = ()) -> None:
        self.target = target
        self.chain = list(chain)
        if len(self.chain) > 1:
            message += f" Required by: {format_chain(self.chain[:-1])}"
        super().__init__(message)


class BundleNotFound(NetworkError):
    def __init__(self, bundle_id: str, *, skill: str | None = None) -> None:
        self.bundle_id = bundle_id
        self.skill = skill
        owner = f" for {skill}" if skill else ""
        super().__init__(f"Bundle {bundle_id}{owner} not found in storage.", target=bundle_id)


class BundleCorrupt(SkillsError):
    def __init__(self, bundle_id: str, reason: str, *, skill: str | None = None) -> None:
        self.bundle_id = bundle_id
        self.reason = reason
        self.skill = skill
        owner = f" for {skill}" if skill else ""
        super().__init__(f"Bundle {bundle_id}{owner} is corrupt: {reason}")


class AlreadyInstalled(SkillsError):
    def __init__(self, name: str, path: Path) -> None:
        self.name = name
        self.path = path
        super().__init__(f"Skill {name!r} is already installed at {path}. Use --force to overwrite.")


class ExtractionError(SkillsError):
    def __init__(self, path: Path, reason: str) -> None:
        self.path = path
        self.reason = reason
        super().__init__(f"Failed to install into {path}: {reason}")


class LockFileError(SkillsError):
    def __init__(self, path: Path, reason: str, *, installed: Sequence[str] = ()) -> None:
        self.path = path
        self.reason = reason
        self.installed = tuple(installed)
        msg = f"Lock file {path}: {reason}"
        if self.installed:
            msg += (
                f" (skills installed on disk but not recorded: {', '.join(self.installed)};"
                " re-run the install to record them)"
            )
        super().__init__(msg)


class PlanInvariantError(RuntimeError):
    """Raised when a topological sort leaves nodes behind. Indicates a bug, not bad input."""
