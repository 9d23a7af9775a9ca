from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Callable, Iterable, Iterator

from .errors import LockFileError

logger = logging.getLogger(__name__)

LOCKFILE_VERSION = 1


@dataclass(frozen=True)
class InstalledSkillRecord:
    """
    One installed skill and the dependencies it pulled in.

    The dependencies form a provenance tree, not a graph: a skill reached through
    two parents is recorded once under each of them.
    """

    name: str
    version: str
    bundle_id: str
    installed_at: int
    installed_path: str
    is_direct_dependency: bool
    dependencies: tuple["InstalledSkillRecord", ...] = ()

    def walk(self) -> Iterator["InstalledSkillRecord"]:
        yield self
        for dep in self.dependencies:
            yield from dep.walk()

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "version": self.version,
            "arweaveTxId": self.bundle_id,
            "installedAt": self.installed_at,
            "installedPath": self.installed_path,
            "isDirectDependency": self.is_direct_dependency,
            "dependencies": [d.to_dict() for d in self.dependencies],
        }

    @classmethod
    def from_dict(cls, raw: Any) -> "InstalledSkillRecord":
        if not isinstance(raw, dict):
            raise ValueError("skill record must be an object")
        name = raw["name"]
        version = raw["version"]
        bundle_id = raw.get("arweaveTxId", raw.get("bundleId"))
        if not isinstance(name, str) or not isinstance(version, str) or not isinstance(bundle_id, str):
            raise ValueError(f"skill record {raw.get('name')!r} is missing name, version or arweaveTxId")
        deps_raw = raw.get("dependencies", [])
        if not isinstance(deps_raw, list):
            raise ValueError(f"dependencies of {name!r} must be an array")
        return cls(
            name=name,
            version=version,
            bundle_id=bundle_id,
            installed_at=int(raw.get("installedAt", 0)),
            installed_path=str(raw.get("installedPath", "")),
            is_direct_dependency=bool(raw.get("isDirectDependency", False)),
            dependencies=tuple(cls.from_dict(d) for d in deps_raw),
        )


@dataclass(frozen=True)
class LockFile:
    schema_version: int
    generated_at: int
    install_root: str
    skills: tuple[InstalledSkillRecord, ...] = ()

    def walk(self) -> Iterator[InstalledSkillRecord]:
        for record in self.skills:
            yield from record.walk()

    def find(self, name: str) -> InstalledSkillRecord | None:
        for record in self.skills:
            if record.name == name:
                return record
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "lockfileVersion": self.schema_version,
            "generatedAt": self.generated_at,
            "installLocation": self.install_root,
            "skills": [r.to_dict() for r in self.skills],
        }


def installed_versions(lock: LockFile) -> dict[str, set[str]]:
    """Every (name, version) recorded anywhere in the lock file, at any depth."""
    out: dict[str, set[str]] = {}
    for record in lock.walk():
        out.setdefault(record.name, set()).add(record.version)
    return out


class LockFileStore:
    """Reads, merges and atomically writes skills-lock.json."""

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock

    def empty(self, install_root: str | Path) -> LockFile:
        return LockFile(
            schema_version=LOCKFILE_VERSION,
            generated_at=int(self._clock()),
            install_root=str(install_root),
        )

    def read(self, path: Path) -> LockFile:
        if not path.exists():
            return self.empty(path.parent)
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise LockFileError(path, f"malformed JSON ({e})") from e
        except OSError as e:
            raise LockFileError(path, f"could not be read ({e})") from e
        if not isinstance(raw, dict):
            raise LockFileError(path, "expected a JSON object at the top level")

        try:
            version = int(raw.get("lockfileVersion", LOCKFILE_VERSION))
            skills_raw = raw.get("skills", [])
            if not isinstance(skills_raw, list):
                raise ValueError("skills must be an array")
            skills = tuple(InstalledSkillRecord.from_dict(s) for s in skills_raw)
            generated_at = int(raw.get("generatedAt", 0))
        except (KeyError, TypeError, ValueError) as e:
            raise LockFileError(path, f"invalid contents ({e})") from e

        if version > LOCKFILE_VERSION:
            logger.warning(
                "lock file %s uses lockfileVersion %d (newer than %d); reading it best-effort",
                path,
                version,
                LOCKFILE_VERSION,
            )
        return LockFile(
            schema_version=version,
            generated_at=generated_at,
            install_root=str(raw.get("installLocation", path.parent)),
            skills=skills,
        )

    def merge(self, existing: LockFile, new_records: Iterable[InstalledSkillRecord]) -> LockFile:
        merged = list(existing.skills)
        for record in new_records:
            for i, current in enumerate(merged):
                if current.name == record.name:
                    merged[i] = record
                    break
            else:
                merged.append(record)
        return replace(existing, skills=tuple(merged), generated_at=int(self._clock()))

    def write(self, lock: LockFile, path: Path) -> None:
        tmp = path.with_suffix(path.suffix + ".tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_text(json.dumps(lock.to_dict(), indent=2, sort_keys=True) + "\n", encoding="utf-8")
            tmp.replace(path)
        except OSError as e:
            tmp.unlink(missing_ok=True)
            raise LockFileError(path, f"could not be written ({e.strerror or e})") from e
        logger.info("wrote lock file %s (%d skill(s))", path, len(lock.skills))
