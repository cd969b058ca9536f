import argparse
import asyncio
import sys
import textwrap

import pytest
import yaml

from talos_provisioner.cli import render, run
from talos_provisioner.daemon import submit_manifest_dir
from talos_provisioner.reconciler.store import ResourceStore

CONFIGURATION = textwrap.dedent(
    """
    kind: Configuration
    metadata:
      name: cp-1
    spec:
      node: 10.0.0.9
      machine_type: controlplane
      cluster_name: demo
      cluster_endpoint: https://10.0.0.5:6443
      machine_secrets_ref: demo
    """
)


def test_submit_manifest_dir(tmp_path):
    (tmp_path / "10-config.yaml").write_text(CONFIGURATION)
    (tmp_path / "20-secrets.yml").write_text("kind: Secrets\nmetadata:\n  name: demo\n")
    (tmp_path / "notes.txt").write_text("ignored")

    store = ResourceStore()
    assert asyncio.run(submit_manifest_dir(store, str(tmp_path))) == 2
    assert store.get("Configuration", "cp-1").spec.cluster_name == "demo"
    assert store.get("Secrets", "demo") is not None


def test_render_cli(tmp_path, monkeypatch, capsys, secrets_artifact):
    manifest = tmp_path / "cluster.yaml"
    manifest.write_text(CONFIGURATION)
    artifact = tmp_path / "demo.yaml"
    artifact.write_text(yaml.safe_dump(secrets_artifact))

    monkeypatch.setattr(
        sys, "argv", ["render", str(manifest), "--secrets", str(artifact)]
    )
    render.main()
    document = yaml.safe_load(capsys.readouterr().out)
    assert document["cluster"]["clusterName"] == "demo"
    assert document["cluster"]["controlPlane"]["endpoint"] == "https://10.0.0.5:6443"


def test_render_cli_without_secrets(tmp_path, monkeypatch, capsys):
    manifest = tmp_path / "cluster.yaml"
    manifest.write_text(CONFIGURATION)
    artifact = tmp_path / "empty.yaml"
    artifact.write_text("{}\n")

    monkeypatch.setattr(
        sys, "argv", ["render", str(manifest), "--secrets", str(artifact)]
    )
    with pytest.raises(SystemExit) as info:
        render.main()
    assert info.value.code == 1
    assert "not published" in capsys.readouterr().err


def test_run_flags_override_environment(monkeypatch):
    monkeypatch.setenv("TALOS_PROVISIONER_POLL_INTERVAL", "30")
    monkeypatch.setenv("TALOS_PROVISIONER_WORKERS", "4")
    args = argparse.Namespace(
        manifest_dir=None,
        state_dir=None,
        poll_interval=5.0,
        workers=None,
        log_level=None,
    )
    settings = run.build_settings(args)
    assert settings.poll_interval == 5.0
    assert settings.workers == 4
    assert settings.default_port == 50000
