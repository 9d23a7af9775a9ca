import json
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from agentskills.config import (
    DEFAULT_GATEWAY_URL,
    MAX_WORKERS_LIMIT,
    Config,
    apply_env,
    config_path,
    load_config,
    lock_file_path,
    normalize_config,
    resolve_install_root,
    save_config,
)
from agentskills.errors import ConfigurationError


class TestConfigFile(unittest.TestCase):
    def test_missing_file_gives_defaults(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            self.assertEqual(load_config(Path(td) / "none.json"), Config())

    def test_save_and_load(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "sub" / "config.json"
            saved = save_config(Config(gateway_url="https://gw.example", max_workers=2), path)
            self.assertEqual(saved, path)
            self.assertEqual(path.stat().st_mode & 0o777, 0o600)
            cfg = load_config(path)
            self.assertEqual(cfg.gateway_url, "https://gw.example")
            self.assertEqual(cfg.max_workers, 2)

    def test_unknown_keys_ignored_and_non_object_is_empty(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "config.json"
            path.write_text(json.dumps({"timeout_s": 5, "token": "legacy"}), encoding="utf-8")
            self.assertEqual(load_config(path).timeout_s, 5)
            path.write_text("[1, 2]", encoding="utf-8")
            self.assertEqual(load_config(path), Config())

    def test_malformed_file_is_an_error(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "config.json"
            path.write_text("{", encoding="utf-8")
            with self.assertRaises(ConfigurationError):
                load_config(path)

    def test_config_path_env_override(self) -> None:
        with patch.dict("os.environ", {"AGENTSKILLS_CONFIG_PATH": "/tmp/x/agentskills.json"}):
            self.assertEqual(config_path(), Path("/tmp/x/agentskills.json"))
        self.assertEqual(config_path("/tmp/y.json"), Path("/tmp/y.json"))


class TestConfigResolution(unittest.TestCase):
    def test_env_overrides_file_values(self) -> None:
        cfg = apply_env(
            Config(gateway_url="https://file.example", timeout_s=10.0),
            {"ARWEAVE_GATEWAY": "https://env.example", "AGENTSKILLS_MAX_WORKERS": "6", "AO_REGISTRY_PROCESS_ID": "pid"},
        )
        cfg = normalize_config(cfg)
        self.assertEqual(cfg.gateway_url, "https://env.example")
        self.assertEqual(cfg.registry_process_id, "pid")
        self.assertEqual(cfg.max_workers, 6)
        self.assertEqual(cfg.timeout_s, 10.0)

    def test_empty_env_keeps_defaults(self) -> None:
        self.assertEqual(normalize_config(apply_env(Config(), {})).gateway_url, DEFAULT_GATEWAY_URL)

    def test_url_validation(self) -> None:
        self.assertEqual(normalize_config(Config(gateway_url="https://gw.example/")).gateway_url, "https://gw.example")
        self.assertEqual(normalize_config(Config(gateway_url="http://127.0.0.1:1984")).gateway_url, "http://127.0.0.1:1984")
        with self.assertRaises(ConfigurationError) as ctx:
            normalize_config(Config(registry_url="http://node.example"))
        self.assertEqual(ctx.exception.field, "registry_url")

    def test_workers_clamped_and_timeout_checked(self) -> None:
        self.assertEqual(normalize_config(Config(max_workers=50)).max_workers, MAX_WORKERS_LIMIT)
        self.assertEqual(normalize_config(Config(max_workers=0)).max_workers, 1)
        for bad in (Config(timeout_s=0), Config(timeout_s="soon"), Config(max_workers="many")):
            with self.subTest(bad), self.assertRaises(ConfigurationError):
                normalize_config(bad)

    def test_install_root_and_lock_path(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = resolve_install_root(Config(), override=td)
            self.assertEqual(root, Path(td).resolve())
            configured = resolve_install_root(Config(install_root=str(Path(td) / "cfg")))
            self.assertEqual(configured, (Path(td) / "cfg").resolve())
        with patch("pathlib.Path.home", return_value=Path("/home/tester")):
            self.assertEqual(resolve_install_root(Config(), global_install=True), Path("/home/tester/.claude/skills").resolve())
        self.assertEqual(lock_file_path(Path("/home/tester/.claude/skills")), Path("/home/tester/.claude/skills-lock.json"))


if __name__ == "__main__":
    unittest.main()
