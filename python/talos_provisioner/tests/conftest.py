from typing import Dict

import pytest

from talos_provisioner.models.secrets import MachineSecretsData
from talos_provisioner.secrets.pki import generate_machine_secrets
from talos_provisioner.tests.fakes import FakeClientFactory, FakeMachineClient


@pytest.fixture
def fake_client() -> FakeMachineClient:
    return FakeMachineClient()


@pytest.fixture
def fake_factory(fake_client: FakeMachineClient) -> FakeClientFactory:
    return FakeClientFactory(fake_client)


@pytest.fixture(scope="session")
def machine_secrets() -> MachineSecretsData:
    return generate_machine_secrets()


@pytest.fixture
def secrets_artifact(machine_secrets: MachineSecretsData) -> Dict[str, str]:
    """A published artifact carrying only what the Configuration stage reads."""
    return {"machine_secrets": machine_secrets.model_dump_json()}
