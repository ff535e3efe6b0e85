from pathlib import Path

import pytest

from alerts import ConfigError
from jobs.config import (
    DEFAULT_DB_PATH,
    DEFAULT_STATE_PATH,
    get_config_path,
    get_db_path,
    load_config,
    parse_config,
)

ROOT = Path(__file__).parent.parent


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for k in ("BEACON_DB_PATH", "BEACON_STATE_PATH", "BEACON_CONFIG"):
        monkeypatch.delenv(k, raising=False)


def test_example_config_loads():
    cfg = load_config(str(ROOT / "config.yaml"))
    assert cfg.global_.scrape_interval == 15
    assert cfg.global_.retention == 15 * 86400
    assert cfg.global_.external_labels == {"cluster": "local"}
    assert [j.job_name for j in cfg.scrape_configs] == ["node", "api"]
    assert cfg.scrape_configs[1].scrape_interval == 30
    assert cfg.scrape_configs[1].sample_limit == 50000
    assert [g.name for g in cfg.rule_groups] == ["availability", "golden-signals"]
    assert cfg.route.receiver == "log"
    assert [r.receiver for r in cfg.route.routes] == ["oncall", "archive"]
    assert cfg.route.routes[0].continue_ is True
    oncall = {r.name: r for r in cfg.receivers}["oncall"]
    assert oncall.rate_limit == (20, 3600)
    assert len(cfg.inhibit_rules) == 1
    assert cfg.inhibit_rules[0].equal == ["job", "instance"]


def test_defaults_with_empty_config():
    cfg = parse_config({})
    assert cfg.global_.evaluation_interval == 15
    assert cfg.global_.resolve_timeout == 300
    assert cfg.scrape_configs == []
    assert cfg.rule_groups == []
    # no routing configured: everything goes to a log receiver
    assert cfg.route.receiver == "default"
    assert cfg.receivers[0].log_configs == [{}]
    assert cfg.db_path == DEFAULT_DB_PATH
    assert cfg.state_path == DEFAULT_STATE_PATH


def test_first_receiver_is_default_route():
    cfg = parse_config({"receivers": [{"name": "hook", "webhook_configs": [{"url": "http://x"}]}]})
    assert cfg.route.receiver == "hook"


def test_env_overrides(monkeypatch, tmp_path):
    monkeypatch.setenv("BEACON_DB_PATH", str(tmp_path / "env.db"))
    monkeypatch.setenv("BEACON_STATE_PATH", str(tmp_path / "state.json"))
    cfg = parse_config({"db_path": "file.db", "state_path": "file.json"})
    assert cfg.db_path == str(tmp_path / "env.db")
    assert cfg.state_path == str(tmp_path / "state.json")


def test_get_db_path_precedence(monkeypatch):
    assert get_db_path() == DEFAULT_DB_PATH
    assert get_db_path({"db_path": "x.db"}) == "x.db"
    monkeypatch.setenv("BEACON_DB_PATH", "/tmp/y.db")
    assert get_db_path({"db_path": "x.db"}) == "/tmp/y.db"


def test_get_config_path(monkeypatch):
    assert get_config_path() == "config.yaml"
    monkeypatch.setenv("BEACON_CONFIG", "/etc/beacon.yaml")
    assert get_config_path() == "/etc/beacon.yaml"


def test_rule_files_resolve_against_config_dir(tmp_path):
    (tmp_path / "rules").mkdir()
    (tmp_path / "rules" / "a.yaml").write_text(
        "groups:\n  - name: a\n    rules:\n      - alert: Down\n        expr: up == 0\n",
        encoding="utf-8",
    )
    (tmp_path / "beacon.yaml").write_text(
        "global:\n  evaluation_interval: 1m\nrule_files:\n  - rules/a.yaml\n",
        encoding="utf-8",
    )
    cfg = load_config(str(tmp_path / "beacon.yaml"))
    [group] = cfg.rule_groups
    assert group.name == "a"
    assert group.interval == 60


def test_inline_and_file_groups_must_not_collide(tmp_path):
    (tmp_path / "r.yaml").write_text("groups:\n  - name: g\n    rules: []\n", encoding="utf-8")
    data = {"rule_files": ["r.yaml"], "rule_groups": [{"name": "g", "rules": []}]}
    with pytest.raises(ConfigError, match="duplicate group 'g'"):
        parse_config(data, base_dir=str(tmp_path))


@pytest.mark.parametrize(
    "data, where",
    [
        ({"global": {"scrape_interval": "soon"}}, "global.scrape_interval"),
        ({"global": {"scrape_timeout": "0s"}}, "global.scrape_timeout"),
        ({"global": {"external_labels": {"bad-name": "x"}}}, "global.external_labels.bad-name"),
        ({"scrape_configs": [{"job_name": "a"}, {"job_name": "a"}]}, "scrape_configs[1].job_name"),
        ({"scrape_configs": [{"static_configs": []}]}, "scrape_configs[0].job_name"),
        ({"scrape_configs": [{"job_name": "a", "scheme": "ftp"}]}, "scrape_configs[0].scheme"),
        (
            {"scrape_configs": [{"job_name": "a", "static_configs": [{"targets": ["ok:80", "host:abc"]}]}]},
            "scrape_configs[0].static_configs[0].targets[1]",
        ),
        (
            {"scrape_configs": [{"job_name": "a", "static_configs": [{"targets": ["http://host:80"]}]}]},
            "scrape_configs[0].static_configs[0].targets[0]",
        ),
        (
            {"scrape_configs": [{"job_name": "a", "static_configs": [{"targets": ["host:70000"]}]}]},
            "scrape_configs[0].static_configs[0].targets[0]",
        ),
        ({"scrape_configs": [{"job_name": "a", "sample_limit": -1}]}, "scrape_configs[0].sample_limit"),
        ({"receivers": [{"name": "r"}], "route": {"receiver": "nope"}}, "route.receiver"),
        (
            {"receivers": [{"name": "r"}], "route": {"receiver": "r", "routes": [{"receiver": "x"}]}},
            "route.routes[0].receiver",
        ),
        ({"receivers": [{"name": "r"}], "route": {"receiver": "r", "matchers": ["a=b"]}}, "route.matchers"),
        ({"receivers": [{"name": "r"}], "route": {}}, "route.receiver"),
        (
            {"receivers": [{"name": "r"}], "route": {"receiver": "r", "routes": [{"matchers": ["a=~\"(\""]}]}},
            "route.routes[0].matchers[0]",
        ),
        ({"receivers": [{"name": "r"}, {"name": "r"}]}, "receivers[1].name"),
        ({"receivers": [{"name": "r", "webhook_configs": [{}]}]}, "receivers[0].webhook_configs[0].url"),
        (
            {"receivers": [{"name": "r", "rate_limit": {"max_notifications": 0}}]},
            "receivers[0].rate_limit.max_notifications",
        ),
        ({"inhibit_rules": [{"source_matchers": ["a=b"]}]}, "inhibit_rules[0]"),
        ({"scrape_configs": {"job_name": "a"}}, "scrape_configs"),
    ],
)
def test_invalid_config_names_key_path(data, where):
    with pytest.raises(ConfigError) as exc:
        parse_config(data)
    assert str(exc.value).startswith(where + ":")


def test_load_config_missing_file(tmp_path):
    with pytest.raises(ConfigError, match="not found"):
        load_config(str(tmp_path / "nope.yaml"))


def test_load_config_bad_yaml(tmp_path):
    p = tmp_path / "bad.yaml"
    p.write_text("global: [unclosed\n", encoding="utf-8")
    with pytest.raises(ConfigError):
        load_config(str(p))


def test_target_addresses_accept_hosts_ips_and_missing_ports():
    cfg = parse_config(
        {"scrape_configs": [{"job_name": "a", "static_configs": [{"targets": ["db-1.local:9100", "10.0.0.1", "[::1]:9090"]}]}]}
    )
    assert cfg.scrape_configs[0].static_configs[0].targets == ["db-1.local:9100", "10.0.0.1", "[::1]:9090"]
