"""Provisioner configuration.

Precedence, lowest first: dataclass defaults, ``ZONEKEEPER_*`` environment
variables, the YAML file passed with ``--config``, explicit CLI flags.
"""

from __future__ import annotations

import dataclasses
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml

from zonekeeper.lease import DEFAULT_LEASE_TIMEOUT_SEC
from zonekeeper.models import KIND_INTERFACE, VALID_KINDS
from zonekeeper.poller import DEFAULT_POLL_INTERVAL_SEC, DEFAULT_POLL_TIMEOUT_SEC

ENV_PREFIX = "ZONEKEEPER_"
VALID_PROVIDERS = frozenset({"gce", "ec2"})
DEFAULT_STATE_DIR = "/var/lib/zonekeeper"


@dataclass
class ProvisionerConfig:
    provider: str = "gce"
    kind: str = "volume"
    project: str = ""
    region: str = ""
    zone: str = ""
    node_id: str = ""
    node_name: str = ""

    id_tag_key: str = "id"
    id_tag_value: str = ""
    kind_tag_key: str = "kind"
    kind_tag_value: str = ""
    pool_tag_key: str = "node-pool"
    pool_tag_value: str = ""
    lease_tag_key: str = "lease-hold"
    lease_timeout: float = float(DEFAULT_LEASE_TIMEOUT_SEC)

    state_file: str = ""
    poll_interval: float = DEFAULT_POLL_INTERVAL_SEC
    poll_timeout: float = DEFAULT_POLL_TIMEOUT_SEC
    initial_wait_random_seconds: float = 60.0
    pool_wait_timeout: float = 600.0
    pool_wait_interval: float = 10.0

    volume_type: str = ""
    size_gb: int = 300
    iops: int = 0
    throughput: int = 0
    device_name: str = ""
    device_path: str = ""
    mount_dir: str = ""
    fs_type: str = "ext4"
    fstab_path: str = "/etc/fstab"

    subnet_id: str = ""
    security_group_ids: List[str] = field(default_factory=list)
    network_tier: str = ""

    name_prefix: str = "zonekeeper"
    publish_key: str = ""
    webhook_url: str = ""
    log_level: str = "INFO"

    @property
    def resolved_kind_tag_value(self) -> str:
        return self.kind_tag_value or f"{self.name_prefix}-{self.kind}"

    @property
    def resolved_state_file(self) -> Path:
        return Path(self.state_file or f"{DEFAULT_STATE_DIR}/{self.kind}.json")

    def selector_tags(self, pool: str) -> Dict[str, str]:
        tags = {
            self.kind_tag_key: self.resolved_kind_tag_value,
            self.pool_tag_key: pool,
        }
        if self.id_tag_value:
            tags[self.id_tag_key] = self.id_tag_value
        return tags

    def create_params(self) -> Dict[str, Any]:
        params: Dict[str, Any] = {
            "volume_type": self.volume_type,
            "size_gb": self.size_gb,
            "iops": self.iops,
            "throughput": self.throughput,
            "network_tier": self.network_tier,
        }
        if self.kind == KIND_INTERFACE:
            params["subnet_id"] = self.subnet_id
            params["security_group_ids"] = list(self.security_group_ids)
        return {k: v for k, v in params.items() if v}

    def attach_params(self) -> Dict[str, Any]:
        return {"device_name": self.device_name} if self.device_name else {}

    def validate(self) -> "ProvisionerConfig":
        if self.provider not in VALID_PROVIDERS:
            raise ValueError(f"provider: '{self.provider}' not in {sorted(VALID_PROVIDERS)}")
        if self.kind not in VALID_KINDS:
            raise ValueError(f"kind: '{self.kind}' not in {sorted(VALID_KINDS)}")
        if self.provider == "gce" and not self.project:
            raise ValueError("project: required for the gce provider")
        if self.provider == "ec2" and self.volume_type:
            from zonekeeper.ec2_backend import VOLUME_TYPES

            if self.volume_type not in VOLUME_TYPES:
                raise ValueError(f"volume_type: '{self.volume_type}' not in {list(VOLUME_TYPES)}")
        for key in ("lease_timeout", "poll_interval", "poll_timeout", "pool_wait_interval"):
            if getattr(self, key) <= 0:
                raise ValueError(f"{key}: must be positive")
        if self.initial_wait_random_seconds < 0:
            raise ValueError("initial_wait_random_seconds: must not be negative")
        for key in ("id_tag_key", "kind_tag_key", "pool_tag_key", "lease_tag_key"):
            if not getattr(self, key):
                raise ValueError(f"{key}: must not be empty")
        if self.id_tag_value and not self.id_tag_key:
            raise ValueError("id_tag_key: required with id_tag_value")
        return self


_FIELDS = {f.name: f for f in dataclasses.fields(ProvisionerConfig)}


def _coerce(name: str, value: Any) -> Any:
    default = getattr(ProvisionerConfig(), name)
    if isinstance(default, list):
        if isinstance(value, str):
            return [v.strip() for v in value.split(",") if v.strip()]
        return [str(v) for v in value]
    if isinstance(default, bool):
        return str(value).lower() in ("1", "true", "yes")
    if isinstance(default, int) and not isinstance(default, bool):
        return int(value)
    if isinstance(default, float):
        return float(value)
    return str(value)


def _normalize_keys(data: Mapping[str, Any], source: str) -> Dict[str, Any]:
    out = {}
    for key, value in data.items():
        name = str(key).replace("-", "_")
        if name not in _FIELDS:
            raise ValueError(f"{source}: unknown key '{key}'")
        if value is not None:
            out[name] = _coerce(name, value)
    return out


def from_env(environ: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    environ = os.environ if environ is None else environ
    found = {}
    for name in _FIELDS:
        raw = environ.get(f"{ENV_PREFIX}{name.upper()}")
        if raw is not None and raw != "":
            found[name] = _coerce(name, raw)
    return found


def load_yaml(path: str | Path) -> Dict[str, Any]:
    with Path(path).open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: expected a mapping at the top level")
    return data


def load_config(
    config_path: str | Path | None = None,
    overrides: Optional[Mapping[str, Any]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> ProvisionerConfig:
    values: Dict[str, Any] = {}
    values.update(from_env(environ))
    if config_path:
        values.update(_normalize_keys(load_yaml(config_path), str(config_path)))
    if overrides:
        values.update(_normalize_keys({k: v for k, v in overrides.items() if v is not None}, "flags"))
    return ProvisionerConfig(**values).validate()
