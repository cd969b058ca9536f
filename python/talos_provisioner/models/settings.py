# talos_provisioner/models/settings.py

from typing import Optional

from pydantic_settings import BaseSettings


class ProvisionerSettings(BaseSettings):
    """
    Pydantic settings for the provisioning daemon.
    By default, these fields map to environment variables prefixed with
    `TALOS_PROVISIONER_`, e.g. `TALOS_PROVISIONER_POLL_INTERVAL`.
    """

    poll_interval: float = 60.0
    reconcile_timeout: float = 120.0
    rpc_timeout: float = 30.0
    base_delay: float = 1.0
    max_delay: float = 60.0
    global_qps: float = 10.0
    global_burst: int = 100
    workers: int = 2
    default_port: int = 50000
    scratch_dir: str = "/dev/shm"
    state_dir: Optional[str] = None
    manifest_dir: Optional[str] = None
    log_level: str = "INFO"

    class Config:
        # `TALOS_PROVISIONER_STATE_DIR=/var/lib/talos-provisioner` populates state_dir.
        env_prefix = "TALOS_PROVISIONER_"
