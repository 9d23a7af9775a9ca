from __future__ import annotations

import argparse
import json
import logging
import sys
import textwrap
from dataclasses import asdict, replace
from pathlib import Path
from typing import Any

from ._version import __version__
from .client import GatewayBundleStore, RegistryHTTP, RegistryMetadataClient
from .config import (
    DEFAULT_MAX_DEPTH,
    Config,
    apply_env,
    config_path,
    load_config,
    lock_file_path,
    normalize_config,
    resolve_install_root,
    save_config,
)
from .errors import (
    AlreadyInstalled,
    ConfigurationError,
    DependencyError,
    SkillsError,
)
from .fetcher import BundleFetcher
from .lockfile import InstalledSkillRecord, LockFileStore
from .orchestrator import InstallOptions, InstallOrchestrator

# Exit codes: 1 for problems the user can fix by changing the request, 2 otherwise.
_USER_ERRORS = (DependencyError, AlreadyInstalled, ConfigurationError)


def _print_table(rows: list[list[str]]) -> None:
    if not rows:
        return
    widths = [0] * len(rows[0])
    for r in rows:
        for i, c in enumerate(r):
            widths[i] = max(widths[i], len(c))
    for r in rows:
        line = "  ".join(c.ljust(widths[i]) for i, c in enumerate(r))
        print(line.rstrip())


def _merge_cfg(base: Config, args: argparse.Namespace) -> Config:
    # Env overrides config; CLI overrides both.
    cfg = apply_env(base)
    cfg = replace(
        cfg,
        registry_url=getattr(args, "registry_url", None) or cfg.registry_url,
        gateway_url=getattr(args, "gateway_url", None) or cfg.gateway_url,
        timeout_s=getattr(args, "timeout_s", None) or cfg.timeout_s,
    )
    return normalize_config(cfg)


def _install_root(cfg: Config, args: argparse.Namespace) -> Path:
    return resolve_install_root(cfg, override=getattr(args, "dir", None), global_install=getattr(args, "global_install", False))


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="skills",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        description="Install agent skills and their dependencies from the skills registry.",
        epilog=textwrap.dedent(
            """\
            Environment variables:
              HYPERBEAM_NODE, AO_REGISTRY_PROCESS_ID, ARWEAVE_GATEWAY,
              AGENTSKILLS_TIMEOUT_S, AGENTSKILLS_MAX_WORKERS, AGENTSKILLS_CONFIG_PATH
            """
        ),
    )

    def _add_runtime_overrides(parser: argparse.ArgumentParser) -> None:
        # Accepted both before and after the subcommand:
        #   skills --gateway-url https://gw.example install foo
        #   skills install foo --gateway-url https://gw.example
        parser.add_argument("--registry-url", default=argparse.SUPPRESS, help="Registry node URL")
        parser.add_argument("--gateway-url", default=argparse.SUPPRESS, help="Bundle gateway URL")
        parser.add_argument("--timeout-s", type=float, default=argparse.SUPPRESS, help="HTTP timeout in seconds")
        parser.add_argument("-v", "--verbose", action="store_true", default=argparse.SUPPRESS, help="Debug logging")

    def _add_location(parser: argparse.ArgumentParser) -> None:
        where = parser.add_mutually_exclusive_group()
        where.add_argument("--global", dest="global_install", action="store_true", help="Use ~/.claude/skills")
        where.add_argument("--dir", help="Install root directory (default: ./.claude/skills)")

    _add_runtime_overrides(p)
    p.add_argument("--version", action="version", version=f"skills {__version__}")

    sub = p.add_subparsers(dest="cmd", required=True)

    # config
    cfg = sub.add_parser("config", help="Manage local config")
    cfg_sub = cfg.add_subparsers(dest="subcmd", required=True)
    cfg_sub.add_parser("path", help="Print config path")
    cfg_sub.add_parser("show", help="Show config")
    cfg_set = cfg_sub.add_parser("set", help="Set config fields")
    cfg_set.add_argument("--registry-url")
    cfg_set.add_argument("--registry-process-id")
    cfg_set.add_argument("--gateway-url")
    cfg_set.add_argument("--timeout-s", type=float)
    cfg_set.add_argument("--max-workers", type=int)
    cfg_set.add_argument("--install-root", help='Default install root ("" to reset)')

    # install
    install = sub.add_parser("install", aliases=["i"], help="Install a skill and its dependencies")
    _add_runtime_overrides(install)
    install.add_argument("skill", help="Skill name")
    install.add_argument("-f", "--force", action="store_true", help="Overwrite skills that are already installed")
    install.add_argument(
        "--max-depth", type=int, default=DEFAULT_MAX_DEPTH, help=f"Maximum dependency depth (default: {DEFAULT_MAX_DEPTH})"
    )
    install.add_argument("--no-lock", action="store_true", help="Do not update the lock file")
    _add_location(install)
    install.add_argument("--json", action="store_true", help="Output JSON")

    # list
    lst = sub.add_parser("list", aliases=["ls"], help="List skills recorded in the lock file")
    _add_runtime_overrides(lst)
    _add_location(lst)
    lst.add_argument("--json", action="store_true", help="Output JSON")

    return p


def cmd_config(args: argparse.Namespace) -> int:
    if args.subcmd == "path":
        print(str(config_path()))
        return 0

    if args.subcmd == "show":
        cfg = load_config()
        print(json.dumps(asdict(cfg), indent=2, sort_keys=True))
        return 0

    if args.subcmd == "set":
        cfg = load_config()
        updates: dict[str, Any] = {}
        for field in ("registry_url", "registry_process_id", "gateway_url", "timeout_s", "max_workers"):
            value = getattr(args, field)
            if value is not None:
                updates[field] = value
        if args.install_root is not None:
            updates["install_root"] = args.install_root or None
        new_cfg = replace(cfg, **updates)
        normalize_config(new_cfg)
        path = save_config(new_cfg)
        print(f"Saved: {path}")
        return 0

    raise AssertionError("unreachable")


def _make_orchestrator(cfg: Config, http: RegistryHTTP, install_root: Path) -> InstallOrchestrator:
    metadata = RegistryMetadataClient(http, registry_url=cfg.registry_url, process_id=cfg.registry_process_id)
    fetcher = BundleFetcher(GatewayBundleStore(http, gateway_url=cfg.gateway_url))
    return InstallOrchestrator(metadata, fetcher, install_root=install_root, max_workers=cfg.max_workers)


def cmd_install(args: argparse.Namespace) -> int:
    cfg = _merge_cfg(load_config(), args)
    install_root = _install_root(cfg, args)
    options = InstallOptions(
        overwrite=args.force,
        max_depth=args.max_depth,
        destination_root=install_root,
        update_lock=not args.no_lock,
    )

    with RegistryHTTP(timeout_s=cfg.timeout_s) as http:
        result = _make_orchestrator(cfg, http, install_root).install(args.skill, options)

    warnings = [f"{name}: replaced version {old} with {new}" for name, old, new in result.version_changes]
    payload = {
        "skill": args.skill,
        "installed": list(result.installed_names),
        "skipped": list(result.skipped_names),
        "dependency_count": result.dependency_count,
        "plan": list(result.plan),
        "warnings": warnings,
        "install_root": str(install_root),
        "lock_path": str(result.lock_path) if result.lock_path else None,
    }

    if args.json:
        print(json.dumps(payload, indent=2, sort_keys=True))
        return 0

    print(f"install_root: {install_root}")
    print(f"lock: {result.lock_path or 'not updated'}")
    _print_table(
        [
            ["ACTION", "COUNT"],
            ["installed", str(len(result.installed_names))],
            ["skipped", str(len(result.skipped_names))],
            ["dependencies", str(result.dependency_count)],
        ]
    )
    for name in result.installed_names:
        print(f"installed: {name}")
    for name in result.skipped_names:
        print(f"skipped: {name}")
    for warning in warnings:
        print(f"warning: {warning}", file=sys.stderr)
    return 0


def _tree_rows(record: InstalledSkillRecord, indent: int = 0) -> list[list[str]]:
    rows = [["  " * indent + record.name, record.version, record.bundle_id]]
    for dep in record.dependencies:
        rows.extend(_tree_rows(dep, indent + 1))
    return rows


def cmd_list(args: argparse.Namespace) -> int:
    cfg = load_config()
    install_root = _install_root(cfg, args)
    lock_path = lock_file_path(install_root)
    lock = LockFileStore().read(lock_path)

    if args.json:
        print(json.dumps(lock.to_dict(), indent=2, sort_keys=True))
        return 0

    if not lock.skills:
        print(f"No skills recorded in {lock_path}")
        return 0

    rows = [["NAME", "VERSION", "BUNDLE"]]
    for record in lock.skills:
        rows.extend(_tree_rows(record))
    _print_table(rows)
    return 0


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    _setup_logging(getattr(args, "verbose", False))
    try:
        if args.cmd == "config":
            return cmd_config(args)
        if args.cmd in ("install", "i"):
            return cmd_install(args)
        if args.cmd in ("list", "ls"):
            return cmd_list(args)
        raise AssertionError("unreachable")
    except _USER_ERRORS as e:
        print(f"error: {e}", file=sys.stderr)
        return 1
    except SkillsError as e:
        print(f"error: {e}", file=sys.stderr)
        return 2


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
