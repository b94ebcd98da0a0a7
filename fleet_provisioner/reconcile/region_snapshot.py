"""
Point-in-time view of one region, discovered in parallel.

Live instances and volumes are keyed by the local name found in their name
tag, never by the id AWS assigned to them.
"""
# pyright: reportTypedDictNotRequiredAccess=false

from concurrent.futures import ThreadPoolExecutor, as_completed
import contextvars
from dataclasses import dataclass, field, replace
import threading
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Set, Tuple, Union

from botocore.exceptions import BotoCoreError, ClientError
from loguru import logger

from mypy_boto3_ec2.client import EC2Client
from mypy_boto3_ec2.type_defs import AddressTypeDef, InstanceTypeDef, VolumeTypeDef

from ..aws_provider.address import describe_addresses
from ..aws_provider.client_factory import AwsClient
from ..aws_provider.image import get_root_device_names
from ..aws_provider.instance import associate_address, describe_live_instances
from ..aws_provider.security_group import find_security_group_ids
from ..aws_provider.volume import describe_volumes
from ..aws_provider.vpc import ensure_default_vpc
from ..fleet_config import HostConfig, VolumeConfig
from .errors import ProvisionError
from .multiplex import Channel, fan_out
from .tags import MESH_GROUP_NAME, SSH_GROUP_NAME, EnvironmentId, env_filters, env_filters_for_resource, name_from_tags
from .types import InstanceInfo, InstanceState, instance_state_from_ec2

SSH_PORT = "22"


@dataclass
class EnvironmentGroups:
    """Ids of the two environment-scoped security groups, empty when not created yet."""
    ssh_group_id: str = ""
    mesh_group_id: str = ""

    def ids(self) -> Set[str]:
        return {gid for gid in (self.ssh_group_id, self.mesh_group_id) if gid}


@dataclass
class RegionSnapshot:
    name: str
    client: EC2Client
    env: EnvironmentId
    hosts: Dict[str, HostConfig] = field(default_factory=dict)
    volumes: Dict[str, VolumeConfig] = field(default_factory=dict)
    authorized_keys: List[str] = field(default_factory=list)

    vpc_id: str = ""
    addresses: List[AddressTypeDef] = field(default_factory=list)
    # shared with every filtered view of this snapshot
    groups: EnvironmentGroups = field(default_factory=EnvironmentGroups)
    root_devices: Dict[str, str] = field(default_factory=dict)

    # replaced wholesale on refresh, never patched
    instances: Dict[str, InstanceTypeDef] = field(default_factory=dict)
    ec2_volumes: Dict[str, VolumeTypeDef] = field(default_factory=dict)

    def filter(self, hosts: Mapping[str, HostConfig], volumes: Mapping[str, VolumeConfig]) -> 'RegionSnapshot':
        return replace(
            self,
            hosts=dict(hosts),
            volumes=dict(volumes),
            instances={name: self.instances[name] for name in hosts if name in self.instances},
        )

    def host_names(self) -> List[str]:
        return sorted(self.hosts)

    def has_volume(self, name: str) -> bool:
        return name in self.ec2_volumes

    def _partition(self, existing: bool) -> Tuple[Dict[str, HostConfig], Dict[str, VolumeConfig]]:
        hosts: Dict[str, HostConfig] = {}
        volumes: Dict[str, VolumeConfig] = {}
        for name, host in self.hosts.items():
            if (name in self.instances) == existing:
                hosts[name] = host
                for volume_name in host.volumes:
                    if volume_name in self.volumes:
                        volumes[volume_name] = self.volumes[volume_name]
        return hosts, volumes

    def existing(self) -> Tuple[Dict[str, HostConfig], Dict[str, VolumeConfig]]:
        return self._partition(existing=True)

    def not_existing(self) -> Tuple[Dict[str, HostConfig], Dict[str, VolumeConfig]]:
        return self._partition(existing=False)

    def split_instances_by_stopped(self, names: Iterable[str]) -> Tuple[Dict[str, InstanceTypeDef], Dict[str, InstanceTypeDef]]:
        stopped: Dict[str, InstanceTypeDef] = {}
        other: Dict[str, InstanceTypeDef] = {}
        for name in names:
            instance = self.instances[name]
            if instance['State']['Name'] == 'stopped':
                stopped[name] = instance
            else:
                other[name] = instance
        return stopped, other

    def refresh_instances(self):
        self.instances = fetch_instances(self.client, self.env, self.hosts, self.name)

    def refresh_volumes(self):
        self.ec2_volumes = fetch_volumes(self.client, self.env, self.name)

    def count_environment_instances(self) -> int:
        """Live instances of this environment in the region, declared or not."""
        try:
            return len(describe_live_instances(self.client, env_filters(self.env)))
        except (ClientError, BotoCoreError) as exc:
            raise ProvisionError(f"cannot count instances of env {self.env.short_name}: {exc}", region=self.name) from exc

    def instance_infos(self) -> Dict[str, InstanceInfo]:
        result: Dict[str, InstanceInfo] = {}
        for name, host in self.hosts.items():
            instance = self.instances.get(name)
            if instance is None:
                result[name] = InstanceInfo(name=name, state=InstanceState.NOT_EXISTING, user=host.user)
                continue

            info = InstanceInfo(name=name, state=instance_state_from_ec2(instance['State']['Name']), user=host.user)
            if info.state is InstanceState.UP:
                info.external_ip = instance.get('PublicIpAddress', '')
                info.ssh_port = SSH_PORT
                # only the last interface's private ip is reported
                for interface in instance.get('NetworkInterfaces', []):
                    info.ip = interface.get('PrivateIpAddress', info.ip)
            result[name] = info
        return result


@dataclass
class RegionFailure:
    region: str
    error: ProvisionError


def fetch_instances(client: EC2Client, env: EnvironmentId, hosts: Mapping[str, HostConfig], region: str) -> Dict[str, InstanceTypeDef]:
    try:
        live = describe_live_instances(client, env_filters(env))
    except (ClientError, BotoCoreError) as exc:
        raise ProvisionError(f"cannot describe instances: {exc}", region=region) from exc

    result: Dict[str, InstanceTypeDef] = {}
    for instance in live:
        host_name = name_from_tags(instance.get('Tags'))
        host = hosts.get(host_name) if host_name else None
        if host is None:
            continue
        result[host.name] = instance

        public_ip = instance.get('PublicIpAddress')
        if instance['State']['Name'] == 'running' and host.external_ip and public_ip and public_ip != host.external_ip:
            try:
                associate_address(client, instance['InstanceId'], host.external_ip)
            except (ClientError, BotoCoreError) as exc:
                raise ProvisionError(f"cannot associate ip {host.external_ip} to instance {instance['InstanceId']}: {exc}", region=region, host=host.name) from exc
            logger.info(f"Associated elastic ip {host.external_ip} to {host.name} in {region}")
            instance['PublicIpAddress'] = host.external_ip
    return result


def fetch_volumes(client: EC2Client, env: EnvironmentId, region: str) -> Dict[str, VolumeTypeDef]:
    try:
        volumes = describe_volumes(client, env_filters(env))
    except (ClientError, BotoCoreError) as exc:
        raise ProvisionError(f"cannot describe volumes: {exc}", region=region) from exc

    result: Dict[str, VolumeTypeDef] = {}
    for volume in volumes:
        name = name_from_tags(volume.get('Tags'))
        if name:
            result[name] = volume
    return result


def find_environment_groups(client: EC2Client, env: EnvironmentId) -> EnvironmentGroups:
    groups = EnvironmentGroups()
    ssh_ids = find_security_group_ids(client, env_filters_for_resource(env, SSH_GROUP_NAME))
    if ssh_ids:
        groups.ssh_group_id = ssh_ids[0]
    mesh_ids = find_security_group_ids(client, env_filters_for_resource(env, MESH_GROUP_NAME))
    if mesh_ids:
        groups.mesh_group_id = mesh_ids[0]
    return groups


def build_region_snapshot(
    aws: AwsClient,
    region: str,
    env: EnvironmentId,
    hosts: Optional[Mapping[str, HostConfig]] = None,
    volumes: Optional[Mapping[str, VolumeConfig]] = None,
    authorized_keys: Iterable[str] = (),
) -> RegionSnapshot:
    """Discover a region in six parallel fetches; any failure fails the whole region."""
    hosts = dict(hosts or {})
    volumes = dict(volumes or {})
    try:
        client = aws.build(region)
    except (ClientError, BotoCoreError) as exc:
        raise ProvisionError(f"cannot create session: {exc}", region=region) from exc

    fetches: Dict[str, Callable] = {
        "instances": lambda: fetch_instances(client, env, hosts, region),
        "volumes": lambda: fetch_volumes(client, env, region),
        "vpc": lambda: ensure_default_vpc(client),
        "security groups": lambda: find_environment_groups(client, env),
        "elastic ips": lambda: describe_addresses(client),
        "images": lambda: get_root_device_names(client, sorted({host.ami for host in hosts.values() if host.ami})),
    }

    results = dict()
    first_error = None
    with ThreadPoolExecutor(max_workers=len(fetches), thread_name_prefix=f"discover-{region}") as executor:
        # copied context keeps the region bound to the log records of each fetch
        futures = {executor.submit(contextvars.copy_context().run, fetch): label for label, fetch in fetches.items()}
        for future in as_completed(futures):
            label = futures[future]
            try:
                results[label] = future.result()
            except (ClientError, BotoCoreError, ProvisionError) as exc:
                if first_error is None:
                    first_error = (label, exc)
                else:
                    logger.debug(f"Discarding further error in {region} while fetching {label}: {exc}")

    if first_error is not None:
        label, exc = first_error
        if isinstance(exc, ProvisionError):
            raise exc
        raise ProvisionError(f"an unexpected error occurred when fetching {label}: {exc}", region=region) from exc

    return RegionSnapshot(
        name=region,
        client=client,
        env=env,
        hosts=hosts,
        volumes=volumes,
        authorized_keys=list(authorized_keys),
        vpc_id=results["vpc"],
        addresses=results["elastic ips"],
        groups=results["security groups"],
        root_devices=results["images"],
        instances=results["instances"],
        ec2_volumes=results["volumes"],
    )


def region_snapshots_generator(
    aws: AwsClient,
    env: EnvironmentId,
    regions: Iterable[str],
    hosts_by_region: Mapping[str, Mapping[str, HostConfig]],
    volumes_by_region: Mapping[str, Mapping[str, VolumeConfig]],
    cancel: threading.Event,
    *,
    authorized_keys: Iterable[str] = (),
    max_regions: int = 20,
) -> Channel[Union[RegionSnapshot, RegionFailure]]:
    authorized_keys = list(authorized_keys)

    def _build(region: str) -> Union[RegionSnapshot, RegionFailure]:
        with logger.contextualize(region=region):
            logger.debug("Discovering region")
            try:
                return build_region_snapshot(aws, region, env, hosts_by_region.get(region), volumes_by_region.get(region), authorized_keys)
            except ProvisionError as exc:
                return RegionFailure(region, exc)

    return fan_out(cancel, sorted(set(regions)), _build, max_workers=max_regions, name="discover")


def build_snapshots(
    aws: AwsClient,
    env: EnvironmentId,
    regions: Iterable[str],
    hosts_by_region: Mapping[str, Mapping[str, HostConfig]],
    volumes_by_region: Mapping[str, Mapping[str, VolumeConfig]],
    cancel: threading.Event,
    *,
    authorized_keys: Iterable[str] = (),
    max_regions: int = 20,
) -> Dict[str, RegionSnapshot]:
    """Snapshots of every region that could be discovered, failed regions are logged and dropped."""
    result: Dict[str, RegionSnapshot] = {}
    for response in region_snapshots_generator(aws, env, regions, hosts_by_region, volumes_by_region, cancel,
                                               authorized_keys=authorized_keys, max_regions=max_regions):
        if isinstance(response, RegionFailure):
            logger.error(f"Region {response.region} dropped from this run: {response.error}")
        else:
            result[response.name] = response
    return result
