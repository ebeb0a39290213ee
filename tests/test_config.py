"""Tests for the configuration module."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import pytest
from filelock import FileLock, Timeout

from lsptop.config import aliases as aliases_module
from lsptop.config import (
    AliasStore,
    Config,
    deep_merge,
    get_config,
    get_config_paths,
    get_system_config_path,
    get_user_config_path,
    load_config,
    reset_config,
)
from lsptop.config.loader import dict_to_config, env_overrides


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "LSPTOP_SOCKET",
        "LSPTOP_PID_FILE",
        "LSPTOP_IDLE_TIMEOUT",
        "LSPTOP_SERVER_COMMAND",
        "LSPTOP_LOG",
        "LSPTOP_LOG_LEVEL",
    ):
        monkeypatch.delenv(name, raising=False)


class TestDeepMerge:
    """Test the deep merge algorithm."""

    def test_simple_override(self) -> None:
        result = deep_merge({"a": 1, "b": 2}, {"b": 3, "c": 4})
        assert result == {"a": 1, "b": 3, "c": 4}

    def test_nested_merge(self) -> None:
        """Nested sections merge key by key."""
        base = {"server": {"command": ["vtsls", "--stdio"], "request_timeout": 10}}
        result = deep_merge(base, {"server": {"request_timeout": 3}})
        assert result["server"]["command"] == ["vtsls", "--stdio"]
        assert result["server"]["request_timeout"] == 3

    def test_none_does_not_override(self) -> None:
        assert deep_merge({"a": 1}, {"a": None}) == {"a": 1}

    def test_list_replaced_not_merged(self) -> None:
        result = deep_merge({"markers": ["tsconfig.json"]}, {"markers": ["package.json"]})
        assert result["markers"] == ["package.json"]

    def test_base_is_not_mutated(self) -> None:
        base = {"daemon": {"idle_timeout": 60}}
        deep_merge(base, {"daemon": {"idle_timeout": 5}})
        assert base == {"daemon": {"idle_timeout": 60}}


class TestConfigPaths:
    def test_system_path(self) -> None:
        assert get_system_config_path() == Path("/etc/lsptop/config.yaml")

    def test_user_path_respects_xdg(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("XDG_CONFIG_HOME", "/home/test/.config-custom")
        assert get_user_config_path() == Path("/home/test/.config-custom/lsptop/config.yaml")

    def test_short_dir_without_dot_config(
        self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path
    ) -> None:
        monkeypatch.delenv("XDG_CONFIG_HOME", raising=False)
        monkeypatch.setattr(Path, "home", classmethod(lambda cls: tmp_path))
        assert get_user_config_path() == tmp_path / ".lsp-top" / "config.yaml"

    def test_order_is_system_then_user(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("XDG_CONFIG_HOME", "/xdg")
        assert get_config_paths() == [
            Path("/etc/lsptop/config.yaml"),
            Path("/xdg/lsptop/config.yaml"),
        ]


class TestDictToConfig:
    def test_empty_gives_defaults(self) -> None:
        config = dict_to_config({})
        assert config.daemon.socket_path == "/tmp/lsp-top.sock"
        assert config.server.command == ["vtsls", "--stdio"]
        assert config.server.project_markers == ["tsconfig.json", "jsconfig.json"]
        assert config.logging.file == "/tmp/lsp-top.log"

    def test_command_string_is_split(self) -> None:
        config = dict_to_config({"server": {"command": "node ./server.js --stdio"}})
        assert config.server.command == ["node", "./server.js", "--stdio"]

    def test_numbers_are_coerced(self) -> None:
        config = dict_to_config(
            {"daemon": {"idle_timeout": "120"}, "server": {"request_timeout": 4}}
        )
        assert config.daemon.idle_timeout == 120.0
        assert config.server.request_timeout == 4.0

    def test_trace_flags_from_string(self) -> None:
        config = dict_to_config({"logging": {"trace": "protocol, documents"}})
        assert config.logging.trace == ["protocol", "documents"]

    def test_env_values_become_strings(self) -> None:
        config = dict_to_config({"server": {"env": {"TSS_LOG": 1}}})
        assert config.server.env == {"TSS_LOG": "1"}


class TestEnvOverrides:
    def test_socket_and_command(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("LSPTOP_SOCKET", "/run/lsp.sock")
        monkeypatch.setenv("LSPTOP_SERVER_COMMAND", "typescript-language-server --stdio")

        overrides = env_overrides()

        assert overrides["daemon"]["socket_path"] == "/run/lsp.sock"
        assert overrides["server"]["command"] == ["typescript-language-server", "--stdio"]

    def test_bad_idle_timeout_is_ignored(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("LSPTOP_IDLE_TIMEOUT", "soon")
        assert "daemon" not in env_overrides()


class TestLoadConfig:
    def test_files_merge_in_order(self, tmp_path: Path) -> None:
        system = tmp_path / "system.yaml"
        user = tmp_path / "user.yaml"
        system.write_text("daemon:\n  idle_timeout: 600\n  sweep_interval: 10\n")
        user.write_text("daemon:\n  idle_timeout: 60\n")

        config = load_config(paths=[system, user])

        assert config.daemon.idle_timeout == 60.0
        assert config.daemon.sweep_interval == 10.0

    def test_environment_wins(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        user = tmp_path / "user.yaml"
        user.write_text("daemon:\n  socket_path: /from/file.sock\n")
        monkeypatch.setenv("LSPTOP_SOCKET", "/from/env.sock")

        assert load_config(paths=[user]).daemon.socket_path == "/from/env.sock"

    def test_invalid_yaml_is_skipped(self, tmp_path: Path) -> None:
        broken = tmp_path / "broken.yaml"
        broken.write_text("daemon: [unclosed\n")

        config = load_config(paths=[broken])

        assert isinstance(config, Config)
        assert config.daemon.idle_timeout == 30 * 60

    def test_get_config_caches(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
        monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path))
        reset_config()

        assert get_config() is get_config()

    def test_reload_reads_new_values(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
        monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path))
        reset_config()
        first = get_config()
        monkeypatch.setenv("LSPTOP_SOCKET", "/changed.sock")

        second = load_config(reload=True)

        assert second is not first
        assert second.daemon.socket_path == "/changed.sock"


class TestAliasStore:
    def test_add_get_list_remove(self, tmp_path: Path) -> None:
        store = AliasStore(tmp_path / "aliases.yaml")
        project = tmp_path / "app"
        project.mkdir()

        assert store.add("app", project) == project.resolve()
        assert store.get("app") == str(project.resolve())
        assert store.list() == {"app": str(project.resolve())}
        assert store.remove("app")
        assert not store.remove("app")
        assert store.get("app") is None

    def test_relative_path_stored_absolute(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.chdir(tmp_path)
        (tmp_path / "web").mkdir()
        store = AliasStore(tmp_path / "aliases.yaml")

        store.add("web", "web")

        assert store.get("web") == str((tmp_path / "web").resolve())

    def test_missing_path_rejected(self, tmp_path: Path) -> None:
        store = AliasStore(tmp_path / "aliases.yaml")
        with pytest.raises(ValueError, match="does not exist"):
            store.add("ghost", tmp_path / "ghost")

    def test_second_store_sees_changes(self, tmp_path: Path) -> None:
        path = tmp_path / "aliases.yaml"
        AliasStore(path).add("root", tmp_path)

        assert AliasStore(path).get("root") == str(tmp_path.resolve())

    def test_corrupt_file_reads_empty(self, tmp_path: Path) -> None:
        path = tmp_path / "aliases.yaml"
        path.write_text("- just\n- a list\n")

        assert AliasStore(path).list() == {}

    def test_concurrent_adds_keep_every_alias(self, tmp_path: Path) -> None:
        path = tmp_path / "aliases.yaml"
        names = [f"app{n}" for n in range(8)]

        with ThreadPoolExecutor(max_workers=len(names)) as pool:
            list(pool.map(lambda name: AliasStore(path).add(name, tmp_path), names))

        assert sorted(AliasStore(path).list()) == names
        assert list(tmp_path.glob(".aliases.yaml.*.tmp")) == []

    def test_update_waits_for_lock(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        store = AliasStore(tmp_path / "aliases.yaml")
        monkeypatch.setattr(aliases_module, "LOCK_TIMEOUT", 0.1)

        with FileLock(store.lock_path):
            with pytest.raises(Timeout):
                store.add("app", tmp_path)

        assert store.list() == {}
