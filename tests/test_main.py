import dataclasses
import os

import main
from svcgw import db
from svcgw.launchers import DockerLauncher


EXAMPLES = os.path.join(os.path.dirname(os.path.dirname(__file__)), "examples")


def test_run_refuses_to_start_without_docker(monkeypatch):
    monkeypatch.setenv("RADICLE_DOMAIN", "seed.example.com")
    monkeypatch.setattr(main, "settings", dataclasses.replace(main.settings, launcher="docker"))
    monkeypatch.setattr(DockerLauncher, "available", lambda self: False)

    assert main.run(os.path.join(EXAMPLES, "deployment.yml")) == 2
    assert any("Docker is not available" in e["message"] for e in db.latest_events())


def test_run_aborts_on_invalid_manifest(tmp_path):
    bad = tmp_path / "deployment.yml"
    bad.write_text("services:\n  a:\n    port: 1\n    depends_on: [b]\n")

    assert main.run(str(bad)) == 2
    assert any("Deployment aborted" in e["message"] for e in db.latest_events())
