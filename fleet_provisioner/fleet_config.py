"""Declared fleet: hosts, volumes and the environment they belong to."""
import os
import tomllib
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, ValidationError, field_validator, model_validator

from .reconcile.crypto import get_public_key_body
from .reconcile.errors import ConfigError
from .reconcile.tags import MESH_GROUP_NAME, SSH_GROUP_NAME, EnvironmentId

DEFAULT_FLEET_FILE = "fleet.toml"


def parse_port_mapping(mapping: str) -> Tuple[int, int]:
    """Parse ``"to:from"`` or ``"port"`` into an ordered (from_port, to_port) range."""
    parts = mapping.split(":")
    if len(parts) > 2:
        raise ValueError(f"invalid port mapping {mapping!r}")
    try:
        ports = [int(p) for p in parts]
    except ValueError:
        raise ValueError(f"invalid port mapping {mapping!r}") from None
    for port in ports:
        if not 0 <= port <= 65535:
            raise ValueError(f"port {port} out of range in {mapping!r}")
    return min(ports), max(ports)


class EnvironmentConfig(BaseModel):
    commit: str
    origin: str
    name: str = ""
    authorized_keys: List[str] = []
    ssh_key_path: Optional[str] = None

    def environment_id(self) -> EnvironmentId:
        return EnvironmentId(commit=self.commit, origin=self.origin, name=self.name)

    def public_keys(self) -> List[str]:
        keys = list(self.authorized_keys)
        if self.ssh_key_path:
            keys.append(get_public_key_body(os.path.expanduser(self.ssh_key_path)))
        return keys


class HostConfig(BaseModel):
    name: str
    region: str
    instance_type: str
    osarch: str
    size: int = 20
    user: str = "root"
    availability_zone: str = ""
    ports: List[str] = []
    volumes: List[str] = []
    external_ip: str = ""
    image_name: Optional[str] = None

    # resolved from the [amis] table at load time
    ami: str = ""

    @field_validator("ports")
    @classmethod
    def _check_ports(cls, ports: List[str]) -> List[str]:
        for mapping in ports:
            parse_port_mapping(mapping)
        return ports

    @property
    def port_ranges(self) -> List[Tuple[int, int]]:
        return [parse_port_mapping(mapping) for mapping in self.ports]


class VolumeConfig(BaseModel):
    name: str
    region: str
    size: int
    volume_type: str = "gp3"


class FleetConfig(BaseModel):
    environment: EnvironmentConfig
    amis: Dict[str, Dict[str, str]] = {}
    hosts: List[HostConfig] = []
    volumes: List[VolumeConfig] = []

    @model_validator(mode="after")
    def _resolve(self) -> 'FleetConfig':
        _check_unique("host", [h.name for h in self.hosts])
        _check_unique("volume", [v.name for v in self.volumes])

        volumes = {v.name: v for v in self.volumes}
        for host in self.hosts:
            if host.name in (SSH_GROUP_NAME, MESH_GROUP_NAME):
                raise ValueError(f"host name {host.name} is reserved for the environment security groups")
            amis_for_osarch = self.amis.get(host.osarch)
            if amis_for_osarch is None:
                raise ValueError(f"host {host.name}: unsupported osarch {host.osarch}")
            if host.region not in amis_for_osarch:
                raise ValueError(f"host {host.name}: no image for osarch {host.osarch} in region {host.region}")
            host.ami = amis_for_osarch[host.region]

            for volume_name in host.volumes:
                volume = volumes.get(volume_name)
                if volume is None:
                    raise ValueError(f"host {host.name}: unknown volume {volume_name}")
                if volume.region != host.region:
                    raise ValueError(f"host {host.name}: volume {volume_name} is declared in region {volume.region}, host in {host.region}")
        return self

    def hosts_by_region(self) -> Dict[str, Dict[str, HostConfig]]:
        result: Dict[str, Dict[str, HostConfig]] = {}
        for host in self.hosts:
            result.setdefault(host.region, {})[host.name] = host
        return result

    def volumes_by_region(self) -> Dict[str, Dict[str, VolumeConfig]]:
        result: Dict[str, Dict[str, VolumeConfig]] = {}
        for volume in self.volumes:
            result.setdefault(volume.region, {})[volume.name] = volume
        return result

    def environment_id(self) -> EnvironmentId:
        return self.environment.environment_id()


def _check_unique(kind: str, names: List[str]):
    seen = set()
    for name in names:
        if name in seen:
            raise ValueError(f"duplicate {kind} name {name}")
        seen.add(name)


def load_fleet(path: str = DEFAULT_FLEET_FILE) -> FleetConfig:
    try:
        with open(path, "rb") as f:
            data = tomllib.load(f)
    except FileNotFoundError:
        raise ConfigError(f"{path} not found") from None
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"{path} is not valid TOML: {exc}") from exc

    # the surrounding orchestrator may pin the environment identity
    environment = data.setdefault("environment", {})
    for key, var in (("commit", "FLEET_ENV_COMMIT"), ("origin", "FLEET_ENV_ORIGIN"), ("name", "FLEET_ENV_NAME")):
        value = os.getenv(var)
        if value:
            environment[key] = value

    try:
        return FleetConfig(**data)
    except ValidationError as exc:
        raise ConfigError(f"invalid fleet configuration {path}: {exc}") from exc
