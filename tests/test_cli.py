import json
import os

import cli

EXAMPLES = os.path.join(os.path.dirname(os.path.dirname(__file__)), "examples")


def test_check_prints_startup_order_and_routes(capsys, monkeypatch):
    monkeypatch.setenv("RADICLE_DOMAIN", "seed.example.com")
    assert cli.main(["check", os.path.join(EXAMPLES, "deployment.yml")]) == 0

    out = json.loads(capsys.readouterr().out)
    assert out["startup_order"] == ["git-server", "http-api"]
    assert {"port": 8086, "host": "seed.example.com", "path": "/", "target": "git-server", "strip_prefix": False} in out["routes"]
    assert out["shared_volumes"] == {"/var/opt/radicle": ["git-server", "http-api"]}


def test_check_reports_config_errors(capsys, monkeypatch):
    monkeypatch.delenv("RADICLE_DOMAIN", raising=False)
    assert cli.main(["check", os.path.join(EXAMPLES, "deployment.yml")]) == 2
    assert "RADICLE_DOMAIN" in capsys.readouterr().err


def test_status_calls_control_api(capsys, monkeypatch):
    calls = {}

    class _Resp:
        ok = True

        def json(self):
            return [{"name": "http-api", "state": "running"}]

    def fake_get(url, auth=None, timeout=None, params=None):
        calls["url"] = url
        calls["auth"] = auth
        return _Resp()

    monkeypatch.setattr(cli.requests, "get", fake_get)
    assert cli.main(["--api", "http://127.0.0.1:9900/", "--user", "ops", "--password", "pw", "status"]) == 0
    assert calls == {"url": "http://127.0.0.1:9900/status", "auth": ("ops", "pw")}
    assert json.loads(capsys.readouterr().out)[0]["state"] == "running"
