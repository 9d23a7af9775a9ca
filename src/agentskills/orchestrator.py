from __future__ import annotations

import enum
import logging
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

from .client import MetadataClient
from .config import DEFAULT_MAX_DEPTH, DEFAULT_MAX_WORKERS, lock_file_path
from .errors import ExtractionError, LockFileError, PlanInvariantError
from .fetcher import BundleFetcher
from .graph import DependencyGraph, GraphBuilder
from .installer import SKILL_FILENAME, BundleInstaller
from .lockfile import InstalledSkillRecord, LockFile, LockFileStore, installed_versions
from .planner import InstallPlan, InstallPlanner, PlanAction, PlanEntry

logger = logging.getLogger(__name__)


class InstallState(enum.Enum):
    IDLE = "idle"
    PLANNING = "planning"
    FETCHING = "fetching"
    EXTRACTING = "extracting"
    PERSISTING = "persisting"
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True)
class InstallOptions:
    overwrite: bool = False
    max_depth: int = DEFAULT_MAX_DEPTH
    destination_root: Path | None = None
    update_lock: bool = True


@dataclass(frozen=True)
class InstallResult:
    installed_names: list[str]
    dependency_count: int
    skipped_names: list[str] = field(default_factory=list)
    version_changes: list[tuple[str, str, str]] = field(default_factory=list)
    plan: list[str] = field(default_factory=list)
    lock_path: Path | None = None


def _skill_dir(root: Path, name: str) -> Path:
    if not name or name in (".", "..") or "/" in name or "\\" in name:
        raise ExtractionError(root / name, f"skill name {name!r} is not a valid directory name")
    return root / name


class InstallOrchestrator:
    """
    Install(name, options): plan, fetch and extract, then record the result.

    Planning errors abort before any download or write. Once fetching starts,
    the first failure stops new work; skills already extracted stay on disk, but
    the lock file is only written when every entry succeeded.

    A skill directory left by an earlier run (it holds SKILL.md) is reused and
    recorded instead of downloaded again, unless overwrite is set.
    """

    def __init__(
        self,
        metadata: MetadataClient,
        fetcher: BundleFetcher,
        *,
        install_root: Path,
        installer: BundleInstaller | None = None,
        lock_store: LockFileStore | None = None,
        max_workers: int = DEFAULT_MAX_WORKERS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.builder = GraphBuilder(metadata)
        self.planner = InstallPlanner()
        self.fetcher = fetcher
        self.installer = installer or BundleInstaller()
        self.lock_store = lock_store or LockFileStore(clock=clock)
        self.install_root = install_root
        self.max_workers = max(1, max_workers)
        self._clock = clock
        self.state = InstallState.IDLE
        self.completed: list[str] = []

    def install(self, skill_name: str, options: InstallOptions | None = None) -> InstallResult:
        options = options or InstallOptions()
        root = (options.destination_root or self.install_root).expanduser()
        lock_path = lock_file_path(root)
        self.completed = []

        self.state = InstallState.PLANNING
        try:
            existing = self.lock_store.read(lock_path)
            graph = self.builder.build(skill_name, options.max_depth)
            plan = self.planner.plan(graph, installed_versions(existing))
            for entry in plan.entries:
                _skill_dir(root, entry.name)
            reused = self._reusable(plan, root, options)
        except Exception:
            self.state = InstallState.FAILED
            raise

        self.state = InstallState.FETCHING
        try:
            self._run(plan, root, options, reused)
        except Exception:
            self.state = InstallState.FAILED
            if self.completed:
                logger.warning(
                    "install of %s failed; left in place: %s", skill_name, ", ".join(self.completed)
                )
            raise

        self.state = InstallState.PERSISTING
        if options.update_lock:
            record = self._record(graph, plan, existing, root)
            try:
                self.lock_store.write(self.lock_store.merge(existing, [record]), lock_path)
            except LockFileError as e:
                self.state = InstallState.FAILED
                raise LockFileError(e.path, e.reason, installed=self.completed) from e
        else:
            logger.info("lock file update disabled; %s not written", lock_path)

        self.state = InstallState.DONE
        return InstallResult(
            installed_names=list(self.completed),
            dependency_count=graph.dependency_count,
            skipped_names=[e.name for e in plan.entries if not e.needs_fetch or e.name in reused],
            version_changes=plan.version_changes,
            plan=plan.names,
            lock_path=lock_path if options.update_lock else None,
        )

    @staticmethod
    def _reusable(plan: InstallPlan, root: Path, options: InstallOptions) -> set[str]:
        """Names planned for a fresh install whose directory already holds a skill."""
        if options.overwrite:
            return set()
        reused: set[str] = set()
        for entry in plan.to_fetch:
            if entry.action is not PlanAction.INSTALL:
                continue
            if (_skill_dir(root, entry.name) / SKILL_FILENAME).is_file():
                logger.info("reusing %s already present in %s", entry.name, root)
                reused.add(entry.name)
        return reused

    def _fetch_entry(self, entry: PlanEntry) -> bytes:
        return self.fetcher.fetch(entry.bundle_id, skill=entry.name)

    def _extract_entry(self, entry: PlanEntry, payload: bytes, root: Path, options: InstallOptions) -> Path:
        overwrite = options.overwrite or entry.action is PlanAction.REINSTALL
        return self.installer.install(
            payload,
            _skill_dir(root, entry.name),
            overwrite,
            bundle_id=entry.bundle_id,
            skill=entry.name,
        )

    def _run(self, plan: InstallPlan, root: Path, options: InstallOptions, reused: set[str]) -> None:
        # Only this thread moves the state machine; workers just fetch or extract.
        pending = [e for e in plan.to_fetch if e.name not in reused]
        waiting_on = {e.name for e in pending}
        done: set[str] = set()
        failure: BaseException | None = None

        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="skills-install") as pool:
            running: dict[Future[Any], tuple[PlanEntry, InstallState]] = {}
            while pending or running:
                if failure is None:
                    # Start entries whose in-run dependencies are finished, in plan order.
                    for entry in list(pending):
                        if len(running) >= self.max_workers:
                            break
                        if all(dep in done or dep not in waiting_on for dep in entry.dependencies):
                            pending.remove(entry)
                            self.state = InstallState.FETCHING
                            running[pool.submit(self._fetch_entry, entry)] = (entry, InstallState.FETCHING)
                elif not running:
                    break

                if not running:
                    raise PlanInvariantError(
                        "no runnable entries left: " + ", ".join(e.name for e in pending)
                    )

                finished, _ = wait(running, return_when=FIRST_COMPLETED)
                # Settle completions in plan order so `completed` is deterministic per batch.
                for fut in sorted(finished, key=lambda f: plan.names.index(running[f][0].name)):
                    entry, stage = running.pop(fut)
                    try:
                        outcome = fut.result()
                    except Exception as e:
                        logger.error("installing %s@%s failed: %s", entry.name, entry.version, e)
                        if failure is None:
                            failure = e
                        continue
                    if stage is InstallState.FETCHING:
                        # A fetched entry is in flight and is extracted even after another failure.
                        self.state = InstallState.EXTRACTING
                        running[pool.submit(self._extract_entry, entry, outcome, root, options)] = (
                            entry,
                            InstallState.EXTRACTING,
                        )
                        continue
                    done.add(entry.name)
                    self.completed.append(entry.name)

        if failure is not None:
            raise failure

    def _record(self, graph: DependencyGraph, plan: InstallPlan, existing: LockFile, root: Path) -> InstalledSkillRecord:
        now = int(self._clock())
        previous = {(r.name, r.version): r for r in existing.walk()}

        def build(name: str, is_direct: bool) -> InstalledSkillRecord:
            node = graph.node(name)
            installed_at = now
            installed_path = str(_skill_dir(root, name))
            if plan.entry(name).action is PlanAction.SKIP:
                old = previous.get((name, node.version))
                if old is not None:
                    installed_at = old.installed_at or now
                    installed_path = old.installed_path or installed_path
            return InstalledSkillRecord(
                name=name,
                version=node.version,
                bundle_id=node.bundle_id,
                installed_at=installed_at,
                installed_path=installed_path,
                is_direct_dependency=is_direct,
                dependencies=tuple(build(child, False) for child in node.children),
            )

        return build(graph.root, True)
