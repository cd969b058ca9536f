"""Convergence rules of each stage, driven through the managed reconciler."""

import asyncio
from typing import Dict

import pytest
import yaml

from talos_provisioner.errors import (
    ConfigPatchError,
    ConflictError,
    PlaceholderInputError,
)
from talos_provisioner.machine.client import MachineAPIError, MachineTransportError
from talos_provisioner.models.bootstrap import Bootstrap, BootstrapParameters
from talos_provisioner.models.configuration import (
    Configuration,
    ConfigurationParameters,
    DocumentState,
    RenderDefaults,
)
from talos_provisioner.models.configuration_apply import (
    ConfigurationApply,
    ConfigurationApplyParameters,
    OnDestroy,
)
from talos_provisioner.models.credentials import CredentialBundle
from talos_provisioner.models.kubeconfig import Kubeconfig, KubeconfigParameters
from talos_provisioner.models.resource import ConditionType, ObjectMeta
from talos_provisioner.models.secrets import Secrets, SecretsParameters
from talos_provisioner.reconciler.managed import ManagedReconciler, Outcome
from talos_provisioner.reconciler.manager import build_connectors
from talos_provisioner.reconciler.store import ResourceStore
from talos_provisioner.secrets.credentials import SchemeCredentialResolver
from talos_provisioner.stages.configuration import (
    PLACEHOLDER_MARKER,
    render_configuration,
)
from talos_provisioner.stages.secrets import SecretsExternal
from talos_provisioner.tests.fakes import FakeClientFactory, make_kubeconfig

NODE = "10.0.0.9"
MAINTENANCE = CredentialBundle.maintenance()
ADMIN_CREDENTIALS = {
    "ca_certificate": "CA PEM",
    "client_certificate": "CRT PEM",
    "client_key": "KEY PEM",
}


def reconcilers(store: ResourceStore, factory: FakeClientFactory):
    connectors = build_connectors(store, SchemeCredentialResolver(store), factory)
    return {kind: ManagedReconciler(kind, c, store) for kind, c in connectors.items()}


def _configuration(**overrides) -> ConfigurationParameters:
    params = dict(
        node=NODE,
        cluster_name="demo",
        cluster_endpoint="https://10.0.0.5:6443",
        machine_type="controlplane",
        machine_secrets_ref="secrets",
    )
    params.update(overrides)
    return ConfigurationParameters(**params)


# ----------------------------------------------------------------------
# Secrets
# ----------------------------------------------------------------------


def test_secrets_update_is_conflict_and_status_unchanged(fake_factory):
    async def main():
        store = ResourceStore()
        recs = reconcilers(store, fake_factory)
        await store.apply(Secrets(metadata=ObjectMeta(name="s")))
        assert (await recs["Secrets"].reconcile("s")).outcome == Outcome.SUCCESS
        generated = store.get("Secrets", "s")
        artifact = store.get_artifact("s")
        assert set(artifact) == {
            "ca_certificate",
            "client_certificate",
            "client_key",
            "talos_config",
            "machine_secrets",
        }

        # Repeated passes over a converged record change nothing.
        assert (await recs["Secrets"].reconcile("s")).outcome == Outcome.SUCCESS
        assert store.get("Secrets", "s").status == generated.status

        await store.apply(
            Secrets(metadata=ObjectMeta(name="s"), spec=SecretsParameters(node=NODE))
        )
        result = await recs["Secrets"].reconcile("s")
        assert result.outcome == Outcome.FATAL_ERROR
        assert "immutable" in result.message

        after = store.get("Secrets", "s")
        assert after.status == generated.status
        assert store.get_artifact("s") == artifact
        synced = after.get_condition(ConditionType.SYNCED)
        assert synced.reason == "ReconcileError"
        assert after.is_ready()

    asyncio.run(main())


def test_secrets_update_raises_conflict_directly():
    record = Secrets(metadata=ObjectMeta(name="s"))
    external = SecretsExternal()

    async def main():
        await external.create(record)
        before = record.status.model_copy(deep=True)
        with pytest.raises(ConflictError):
            await external.update(record)
        assert record.status == before

    asyncio.run(main())


# ----------------------------------------------------------------------
# Configuration
# ----------------------------------------------------------------------


def test_render_is_deterministic(machine_secrets):
    first = render_configuration(_configuration(), machine_secrets)
    second = render_configuration(_configuration(), machine_secrets)
    assert first == second
    assert "clusterName: demo" in first
    assert "https://10.0.0.5:6443" in first
    assert PLACEHOLDER_MARKER not in first


def test_render_applies_defaults(machine_secrets):
    defaults = RenderDefaults(cluster_name="fallback", install_disk="/dev/vda")
    doc = yaml.safe_load(
        render_configuration(
            _configuration(cluster_name="", cluster_endpoint=""), machine_secrets, defaults
        )
    )
    assert doc["cluster"]["clusterName"] == "fallback"
    assert doc["cluster"]["controlPlane"]["endpoint"] == defaults.cluster_endpoint
    assert doc["machine"]["install"]["disk"] == "/dev/vda"
    assert doc["machine"]["install"]["image"].endswith(defaults.talos_version)


def test_worker_documents_carry_no_ca_keys(machine_secrets):
    control = yaml.safe_load(render_configuration(_configuration(), machine_secrets))
    worker = yaml.safe_load(
        render_configuration(_configuration(machine_type="worker"), machine_secrets)
    )
    assert "key" in control["machine"]["ca"]
    assert "key" in control["cluster"]["ca"]
    assert "etcd" in control["cluster"]
    assert "key" not in worker["machine"]["ca"]
    assert "key" not in worker["cluster"]["ca"]
    for section in ("etcd", "serviceAccount", "aggregatorCA"):
        assert section not in worker["cluster"]
    assert worker["machine"]["type"] == "worker"


def test_render_with_patches(machine_secrets):
    doc = yaml.safe_load(
        render_configuration(
            _configuration(
                config_patches=["machine:\n  install:\n    wipe: true\n  features: null\n"]
            ),
            machine_secrets,
        )
    )
    assert doc["machine"]["install"]["wipe"] is True
    assert "features" not in doc["machine"]

    with pytest.raises(ConfigPatchError):
        render_configuration(_configuration(config_patches=["- a"]), machine_secrets)


def test_configuration_waits_for_secrets(fake_factory, secrets_artifact):
    async def main():
        store = ResourceStore()
        recs = reconcilers(store, fake_factory)
        await store.apply(
            Configuration(metadata=ObjectMeta(name="c"), spec=_configuration())
        )

        result = await recs["Configuration"].reconcile("c")
        assert result.outcome == Outcome.TRANSIENT_ERROR
        stored = store.get("Configuration", "c")
        assert stored.status.machine_configuration == ""
        assert stored.status.document_state == DocumentState.UNSET
        assert not stored.is_ready()

        await store.publish_artifact("secrets", secrets_artifact)
        assert (await recs["Configuration"].reconcile("c")).outcome == Outcome.SUCCESS
        stored = store.get("Configuration", "c")
        assert stored.status.document_state == DocumentState.RENDERED
        assert stored.status.observed_generation == 1
        assert stored.is_ready()

    asyncio.run(main())


def test_configuration_rerenders_on_spec_change(fake_factory, secrets_artifact):
    async def main():
        store = ResourceStore()
        recs = reconcilers(store, fake_factory)
        await store.publish_artifact("secrets", secrets_artifact)
        await store.apply(
            Configuration(metadata=ObjectMeta(name="c"), spec=_configuration())
        )
        await recs["Configuration"].reconcile("c")
        first = store.get("Configuration", "c").status.machine_configuration

        await store.apply(
            Configuration(
                metadata=ObjectMeta(name="c"), spec=_configuration(cluster_name="prod")
            )
        )
        await recs["Configuration"].reconcile("c")
        stored = store.get("Configuration", "c")
        assert stored.status.observed_generation == 2
        assert stored.status.machine_configuration != first
        assert "clusterName: prod" in stored.status.machine_configuration

    asyncio.run(main())


# ----------------------------------------------------------------------
# Configuration apply
# ----------------------------------------------------------------------


def _apply(document: str, **overrides) -> ConfigurationApply:
    params = dict(
        node=NODE,
        client_configuration=MAINTENANCE,
        machine_configuration_input=document,
    )
    params.update(overrides)
    return ConfigurationApply(
        metadata=ObjectMeta(name="a"), spec=ConfigurationApplyParameters(**params)
    )


def test_placeholder_document_never_up_to_date(fake_factory, fake_client):
    document = f"version: v1alpha1\n{PLACEHOLDER_MARKER}\n"

    async def main():
        store = ResourceStore()
        recs = reconcilers(store, fake_factory)
        record = _apply(document)
        await store.apply(record)

        external = await build_connectors(
            store, SchemeCredentialResolver(store), fake_factory
        )["ConfigurationApply"].connect(record)
        try:
            record.status.applied = True
            observation = await external.observe(record)
            assert observation.resource_exists
            assert not observation.resource_up_to_date

            with pytest.raises(PlaceholderInputError):
                await external.update(record)
        finally:
            await external.disconnect()

        result = await recs["ConfigurationApply"].reconcile("a")
        assert result.outcome == Outcome.TRANSIENT_ERROR
        assert not store.get("ConfigurationApply", "a").status.applied

    asyncio.run(main())
    assert fake_client.count("apply_configuration") == 0
    assert fake_factory.opened == fake_factory.closed == 2


def test_apply_and_reapply_on_change(fake_factory, fake_client):
    async def main():
        store = ResourceStore()
        recs = reconcilers(store, fake_factory)
        await store.apply(_apply("version: v1alpha1\n"))

        assert (await recs["ConfigurationApply"].reconcile("a")).outcome == Outcome.SUCCESS
        status = store.get("ConfigurationApply", "a").status
        assert status.applied and status.last_applied_time is not None

        # Converged: no new RPC.
        await recs["ConfigurationApply"].reconcile("a")
        assert fake_client.count("apply_configuration") == 1

        await store.apply(
            _apply("version: v1alpha1\n", config_patches=["debug: true\n"])
        )
        await recs["ConfigurationApply"].reconcile("a")
        assert fake_client.count("apply_configuration") == 2
        _, data, mode = fake_client.calls[-1]
        assert yaml.safe_load(data) == {"version": "v1alpha1", "debug": True}
        assert mode == "NO_REBOOT"
        assert store.get("ConfigurationApply", "a").status.last_applied_generation == 2

    asyncio.run(main())


def test_apply_failure_keeps_record_unapplied(fake_factory, fake_client):
    fake_client.apply_error = MachineTransportError("connection reset")

    async def main():
        store = ResourceStore()
        recs = reconcilers(store, fake_factory)
        await store.apply(_apply("version: v1alpha1\n"))
        result = await recs["ConfigurationApply"].reconcile("a")
        assert result.outcome == Outcome.TRANSIENT_ERROR
        assert f"stage=ConfigurationApply node={NODE}" in result.message
        stored = store.get("ConfigurationApply", "a")
        assert not stored.status.applied
        assert "connection reset" in stored.get_condition(ConditionType.SYNCED).message

    asyncio.run(main())
    assert fake_factory.opened == fake_factory.closed == 1


def test_delete_with_reset_directive(fake_factory, fake_client):
    async def main():
        store = ResourceStore()
        recs = reconcilers(store, fake_factory)
        await store.apply(
            _apply(
                "version: v1alpha1\n",
                on_destroy=OnDestroy(reset=True, graceful=False, reboot=True),
            )
        )
        await recs["ConfigurationApply"].reconcile("a")
        await store.request_deletion("ConfigurationApply", "a")
        assert (await recs["ConfigurationApply"].reconcile("a")).outcome == Outcome.GONE
        assert store.get("ConfigurationApply", "a") is None

    asyncio.run(main())
    assert ("reset", False, True) in fake_client.calls


def test_unpublished_credentials_wait_for_upstream(fake_factory):
    async def main():
        store = ResourceStore()
        recs = reconcilers(store, fake_factory)
        await store.apply(
            _apply(
                "version: v1alpha1\n",
                client_configuration=None,
                credentials_ref="artifact:s",
            )
        )
        result = await recs["ConfigurationApply"].reconcile("a")
        assert result.outcome == Outcome.TRANSIENT_ERROR
        assert "stage=ConfigurationApply" in result.message
        assert f"node={NODE}" in result.message
        assert "'s' is not published" in result.message
        assert fake_factory.opened == 0

        await store.publish_artifact("s", ADMIN_CREDENTIALS)
        assert (await recs["ConfigurationApply"].reconcile("a")).outcome == Outcome.SUCCESS

    asyncio.run(main())
    assert fake_factory.opened == fake_factory.closed == 1


def test_malformed_credentials_are_fatal(fake_factory):
    async def main():
        store = ResourceStore()
        recs = reconcilers(store, fake_factory)
        await store.publish_artifact("s", {"ca_certificate": "CA"})
        await store.apply(
            _apply(
                "version: v1alpha1\n",
                client_configuration=None,
                credentials_ref="artifact:s",
            )
        )
        result = await recs["ConfigurationApply"].reconcile("a")
        assert result.outcome == Outcome.FATAL_ERROR
        assert "stage=ConfigurationApply" in result.message

    asyncio.run(main())
    assert fake_factory.opened == 0


def test_deletion_proceeds_after_upstream_credentials_are_gone(
    fake_factory, fake_client
):
    async def main():
        store = ResourceStore()
        recs = reconcilers(store, fake_factory)
        await store.publish_artifact("s", ADMIN_CREDENTIALS)
        await store.apply(
            _apply(
                "version: v1alpha1\n",
                client_configuration=None,
                credentials_ref="artifact:s",
                on_destroy=OnDestroy(reset=True),
            )
        )
        assert (await recs["ConfigurationApply"].reconcile("a")).outcome == Outcome.SUCCESS

        await store.delete_artifact("s")
        await store.request_deletion("ConfigurationApply", "a")
        assert (await recs["ConfigurationApply"].reconcile("a")).outcome == Outcome.GONE
        assert store.get("ConfigurationApply", "a") is None
        assert store.get_artifact("a") is None

    asyncio.run(main())
    assert fake_client.count("reset") == 0
    assert fake_factory.opened == fake_factory.closed == 1


def test_unresolvable_credentials_still_block_live_records(fake_factory, monkeypatch):
    monkeypatch.delenv("TALOS_TEST_UNSET_VARIABLE", raising=False)

    async def main():
        store = ResourceStore()
        recs = reconcilers(store, fake_factory)
        await store.apply(
            _apply(
                "version: v1alpha1\n",
                client_configuration=None,
                credentials_ref="env:TALOS_TEST_UNSET_VARIABLE",
            )
        )
        result = await recs["ConfigurationApply"].reconcile("a")
        assert result.outcome == Outcome.FATAL_ERROR
        assert store.get("ConfigurationApply", "a") is not None

    asyncio.run(main())


# ----------------------------------------------------------------------
# Bootstrap
# ----------------------------------------------------------------------


def _bootstrap(**overrides) -> Bootstrap:
    params: Dict = dict(node=NODE, client_configuration=MAINTENANCE)
    params.update(overrides)
    return Bootstrap(metadata=ObjectMeta(name="b"), spec=BootstrapParameters(**params))


def test_bootstrap_is_issued_exactly_once(fake_factory, fake_client):
    async def main():
        store = ResourceStore()
        recs = reconcilers(store, fake_factory)
        await store.apply(_bootstrap())

        for _ in range(5):
            assert (await recs["Bootstrap"].reconcile("b")).outcome == Outcome.SUCCESS
        status = store.get("Bootstrap", "b").status
        assert status.bootstrapped and status.bootstrap_time is not None
        assert status.intent_issued_time is None

        # A desired-state change does not lead to a second bootstrap.
        await store.apply(_bootstrap(endpoint="10.0.0.9:50001"))
        for _ in range(3):
            assert (await recs["Bootstrap"].reconcile("b")).outcome == Outcome.SUCCESS

    asyncio.run(main())
    assert fake_client.count("bootstrap") == 1
    assert fake_client.count("service_state") == 0


def test_bootstrap_waits_for_configuration_apply(fake_factory, fake_client):
    async def main():
        store = ResourceStore()
        recs = reconcilers(store, fake_factory)
        await store.apply(_bootstrap(configuration_apply_ref="a"))
        result = await recs["Bootstrap"].reconcile("b")
        assert result.outcome == Outcome.TRANSIENT_ERROR
        assert store.get("Bootstrap", "b").status.intent_issued_time is None

    asyncio.run(main())
    assert fake_client.count("bootstrap") == 0


def test_refused_bootstrap_clears_intent(fake_factory, fake_client):
    fake_client.bootstrap_error = MachineAPIError("Bootstrap", 500, "etcd data dir")

    async def main():
        store = ResourceStore()
        recs = reconcilers(store, fake_factory)
        await store.apply(_bootstrap())
        assert (await recs["Bootstrap"].reconcile("b")).outcome == Outcome.TRANSIENT_ERROR
        assert store.get("Bootstrap", "b").status.intent_issued_time is None

        fake_client.bootstrap_error = None
        assert (await recs["Bootstrap"].reconcile("b")).outcome == Outcome.SUCCESS
        assert store.get("Bootstrap", "b").status.bootstrapped

    asyncio.run(main())
    assert fake_client.count("bootstrap") == 2
    assert fake_client.count("service_state") == 0


def test_ambiguous_bootstrap_confirmed_remotely(fake_factory, fake_client):
    fake_client.bootstrap_error = MachineTransportError("timed out")

    async def main():
        store = ResourceStore()
        recs = reconcilers(store, fake_factory)
        await store.apply(_bootstrap())
        assert (await recs["Bootstrap"].reconcile("b")).outcome == Outcome.TRANSIENT_ERROR
        held = store.get("Bootstrap", "b").status
        assert held.intent_issued_time is not None and not held.bootstrapped

        # The earlier call did take effect.
        fake_client.bootstrap_error = None
        fake_client.service_states["etcd"] = "Running"
        assert (await recs["Bootstrap"].reconcile("b")).outcome == Outcome.SUCCESS
        status = store.get("Bootstrap", "b").status
        assert status.bootstrapped and status.intent_issued_time is None

    asyncio.run(main())
    assert fake_client.count("bootstrap") == 1
    assert fake_client.count("service_state") == 1


def test_ambiguous_bootstrap_not_reissued_while_unknown(fake_factory, fake_client):
    fake_client.bootstrap_error = MachineTransportError("timed out")

    async def main():
        store = ResourceStore()
        recs = reconcilers(store, fake_factory)
        await store.apply(_bootstrap())
        await recs["Bootstrap"].reconcile("b")

        fake_client.bootstrap_error = None
        fake_client.service_error = MachineTransportError("unreachable")
        for _ in range(3):
            result = await recs["Bootstrap"].reconcile("b")
            assert result.outcome == Outcome.TRANSIENT_ERROR
            assert "cannot be confirmed" in result.message

        fake_client.service_error = None
        fake_client.service_states["etcd"] = "Starting"
        assert (await recs["Bootstrap"].reconcile("b")).outcome == Outcome.TRANSIENT_ERROR
        assert fake_client.count("bootstrap") == 1

        # Remote truth says it never happened: issue it again.
        fake_client.service_states["etcd"] = "Failed"
        assert (await recs["Bootstrap"].reconcile("b")).outcome == Outcome.SUCCESS
        assert store.get("Bootstrap", "b").status.bootstrapped

    asyncio.run(main())
    assert fake_client.count("bootstrap") == 2


def test_bootstrap_past_deadline_releases_client_and_keeps_intent(
    fake_factory, fake_client
):
    fake_client.bootstrap_delay = 30.0

    async def main():
        store = ResourceStore()
        resolver = SchemeCredentialResolver(store)
        connectors = build_connectors(store, resolver, fake_factory)
        reconciler = ManagedReconciler(
            "Bootstrap", connectors["Bootstrap"], store, timeout=0.1
        )
        await store.apply(_bootstrap())

        result = await reconciler.reconcile("b")
        assert result.outcome == Outcome.TRANSIENT_ERROR
        assert "did not finish" in result.message
        assert fake_factory.opened == fake_factory.closed == 1
        status = store.get("Bootstrap", "b").status
        assert status.intent_issued_time is not None
        assert not status.bootstrapped

        fake_client.bootstrap_delay = 0.0
        fake_client.service_states["etcd"] = "Running"
        assert (await reconciler.reconcile("b")).outcome == Outcome.SUCCESS
        assert store.get("Bootstrap", "b").status.bootstrapped

    asyncio.run(main())
    assert fake_client.count("bootstrap") == 1
    assert fake_client.count("service_state") == 1
    assert fake_factory.opened == fake_factory.closed == 2


def test_stuck_bootstrap_is_recovered_by_recreating_the_record(
    fake_factory, fake_client
):
    fake_client.bootstrap_error = MachineTransportError("connection reset")
    fake_client.service_states["etcd"] = "Preparing"

    async def main():
        store = ResourceStore()
        recs = reconcilers(store, fake_factory)
        await store.apply(_bootstrap())
        await recs["Bootstrap"].reconcile("b")

        result = await recs["Bootstrap"].reconcile("b")
        assert result.outcome == Outcome.TRANSIENT_ERROR
        assert "delete and recreate" in result.message

        await store.request_deletion("Bootstrap", "b")
        assert (await recs["Bootstrap"].reconcile("b")).outcome == Outcome.GONE
        assert store.get("Bootstrap", "b") is None

        fake_client.bootstrap_error = None
        await store.apply(_bootstrap())
        assert (await recs["Bootstrap"].reconcile("b")).outcome == Outcome.SUCCESS
        assert store.get("Bootstrap", "b").status.bootstrapped

    asyncio.run(main())
    assert fake_client.count("bootstrap") == 2
    assert fake_client.count("service_state") == 1


# ----------------------------------------------------------------------
# Kubeconfig
# ----------------------------------------------------------------------


def test_kubeconfig_gated_then_retrieved(fake_factory, fake_client):
    fake_client.kubeconfig_data = make_kubeconfig(
        "https://10.0.0.5:6443", "CA PEM", "CRT PEM", "KEY PEM"
    )

    async def main():
        store = ResourceStore()
        recs = reconcilers(store, fake_factory)
        await store.apply(_bootstrap())
        await store.apply(
            Kubeconfig(
                metadata=ObjectMeta(name="k"),
                spec=KubeconfigParameters(
                    node=NODE, client_configuration=MAINTENANCE, bootstrap_ref="b"
                ),
            )
        )
        assert (await recs["Kubeconfig"].reconcile("k")).outcome == Outcome.TRANSIENT_ERROR
        assert fake_client.count("kubeconfig") == 0

        await recs["Bootstrap"].reconcile("b")
        assert (await recs["Kubeconfig"].reconcile("k")).outcome == Outcome.SUCCESS
        config = store.get("Kubeconfig", "k").status.kubernetes_client_configuration
        assert config.host == "https://10.0.0.5:6443"
        assert config.ca_certificate == "CA PEM"
        assert config.client_key == "KEY PEM"
        assert store.get_artifact("k")["host"] == "https://10.0.0.5:6443"

        await recs["Kubeconfig"].reconcile("k")
        assert fake_client.count("kubeconfig") == 1

    asyncio.run(main())


def test_incomplete_kubeconfig_is_retrieval_error(fake_factory, fake_client):
    fake_client.kubeconfig_data = b"apiVersion: v1\nclusters: []\n"

    async def main():
        store = ResourceStore()
        recs = reconcilers(store, fake_factory)
        await store.apply(
            Kubeconfig(
                metadata=ObjectMeta(name="k"),
                spec=KubeconfigParameters(node=NODE, client_configuration=MAINTENANCE),
            )
        )
        result = await recs["Kubeconfig"].reconcile("k")
        assert result.outcome == Outcome.TRANSIENT_ERROR
        assert "incomplete" in result.message
        assert store.get("Kubeconfig", "k").status.kubernetes_client_configuration is None

    asyncio.run(main())


def test_ungated_kubeconfig_retries_until_machine_answers(fake_factory, fake_client):
    fake_client.kubeconfig_error = MachineAPIError("Kubeconfig", 412, "not bootstrapped")

    async def main():
        store = ResourceStore()
        recs = reconcilers(store, fake_factory)
        await store.apply(
            Kubeconfig(
                metadata=ObjectMeta(name="k"),
                spec=KubeconfigParameters(node=NODE, client_configuration=MAINTENANCE),
            )
        )
        result = await recs["Kubeconfig"].reconcile("k")
        assert result.outcome == Outcome.TRANSIENT_ERROR
        assert "412" in result.message

        fake_client.kubeconfig_error = None
        fake_client.kubeconfig_data = make_kubeconfig(
            "https://10.0.0.5:6443", "CA PEM", "CRT PEM", "KEY PEM"
        )
        assert (await recs["Kubeconfig"].reconcile("k")).outcome == Outcome.SUCCESS

    asyncio.run(main())
    assert fake_client.count("kubeconfig") == 2
