from __future__ import annotations

from lockbox.config import Config, deep_merge, expand_vars


def test_deep_merge_appends_lists_and_replaces_with_suffix():
    base = {"a": {"x": 1, "y": 2}, "items": [1, 2], "keep": "base"}
    override = {"a": {"y": 3}, "items": [3], "keep": "over"}
    assert deep_merge(base, override) == {"a": {"x": 1, "y": 3}, "items": [1, 2, 3], "keep": "over"}

    replaced = deep_merge(base, {"items_replace": [9]})
    assert replaced["items"] == [9]


def test_expand_vars_handles_both_forms_and_leaves_unknown():
    env = {"HOME": "/home/u", "NAME": "box"}
    value = {"path": "$HOME/x", "other": ["${NAME}-1", "$MISSING"]}
    assert expand_vars(value, env) == {"path": "/home/u/x", "other": ["box-1", "$MISSING"]}


def test_defaults_apply_without_site_config(tmp_path):
    config = Config(tmp_path)

    assert config.primary_name == "primary"
    assert config.containers_dir == tmp_path / "containers"
    assert config.data_dir == tmp_path / "data"
    assert str(config.mount_root) == "/mnt/encrypted"
    assert config.get("monitor.check_interval_seconds") == 30
    assert config.get("monitor.default_timeout_minutes") == 15
    assert [a["name"] for a in config.applications] == ["SillyTavern"]


def test_site_config_overrides_defaults(tmp_path):
    (tmp_path / "config.toml").write_text(
        '[monitor]\ndefault_timeout_minutes = 5\n\n'
        '[paths]\ndata = "/srv/lockbox-data"\n\n'
        '[[applications]]\nname = "extra"\n'
    )
    config = Config(tmp_path)

    assert config.get("monitor.default_timeout_minutes") == 5
    assert config.get("monitor.check_interval_seconds") == 30
    assert str(config.data_dir) == "/srv/lockbox-data"
    assert [a["name"] for a in config.applications] == ["SillyTavern", "extra"]


def test_root_from_environment(tmp_path, monkeypatch):
    monkeypatch.setenv("LOCKBOX_ROOT", str(tmp_path))
    config = Config()
    assert config.root == tmp_path
    assert config.get("missing.key", "fallback") == "fallback"
