from __future__ import annotations

import os
from typing import Any, Dict, Optional

import boto3
import fasteners

from cumulus.config import ClusterConfig
from cumulus.constants import (
    DEFAULT_BACKEND_REGION,
    DEFAULT_STATE_BACKEND,
    REGION_ENV_VAR,
    STATE_BACKEND_ENV_VAR,
)


class Context:
    """
    Process-wide settings, built once at start up and handed to the provider
    and the state backend. Nothing below the CLI reads the environment.
    """

    _config: Optional[ClusterConfig] = None
    # The generated kubeconfig document
    _kubeconfig: Optional[Dict[str, Any]] = None
    # boto3 sessions keyed by region
    _sessions: Dict[str, boto3.Session]

    _should_save_kubeconfig: bool = True

    def __init__(
        self,
        state_backend: str = DEFAULT_STATE_BACKEND,
        backend_region: str = DEFAULT_BACKEND_REGION,
    ) -> None:
        self.state_backend = state_backend
        self.backend_region = backend_region
        self._sessions = {}
        # Pre-create the locks. Acquire at most one of them at a time.
        self._config_lock = fasteners.ReaderWriterLock()
        self._session_lock = fasteners.ReaderWriterLock()
        self._kubeconfig_lock = fasteners.ReaderWriterLock()

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None) -> "Context":
        env = os.environ if environ is None else environ
        return cls(
            state_backend=env.get(STATE_BACKEND_ENV_VAR) or DEFAULT_STATE_BACKEND,
            backend_region=env.get(REGION_ENV_VAR) or DEFAULT_BACKEND_REGION,
        )

    @fasteners.write_locked(lock="_config_lock")
    def set_config(self, config: ClusterConfig) -> None:
        self._config = config

    @property
    @fasteners.read_locked(lock="_config_lock")
    def config(self) -> Optional[ClusterConfig]:
        return self._config

    @property
    @fasteners.read_locked(lock="_config_lock")
    def cluster_config(self) -> ClusterConfig:
        if self._config is None:
            raise RuntimeError("Config is not set.")
        return self._config

    @property
    @fasteners.read_locked(lock="_config_lock")
    def region(self) -> str:
        # fasteners's inter thread reader lock is reentrant
        return self.cluster_config.region

    @property
    @fasteners.read_locked(lock="_config_lock")
    def cluster_name(self) -> str:
        return self.cluster_config.name

    @fasteners.write_locked(lock="_session_lock")
    def set_session(self, region: str, session: boto3.Session) -> None:
        self._sessions[region] = session

    @fasteners.write_locked(lock="_session_lock")
    def session(self, region: str) -> boto3.Session:
        if region not in self._sessions:
            self._sessions[region] = boto3.Session(region_name=region)
        return self._sessions[region]

    @fasteners.write_locked(lock="_kubeconfig_lock")
    def set_kubeconfig(self, kubeconfig: Dict[str, Any]) -> None:
        self._kubeconfig = kubeconfig

    @property
    @fasteners.read_locked(lock="_kubeconfig_lock")
    def kubeconfig(self) -> Optional[Dict[str, Any]]:
        return self._kubeconfig

    def set_should_save_kubeconfig(self, should_save_kubeconfig: bool) -> None:
        self._should_save_kubeconfig = should_save_kubeconfig

    @property
    def should_save_kubeconfig(self) -> bool:
        return self._should_save_kubeconfig
