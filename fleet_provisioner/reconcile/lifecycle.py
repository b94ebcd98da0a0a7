# pyright: reportTypedDictNotRequiredAccess=false

import threading
from typing import List, Optional, Tuple

from botocore.exceptions import BotoCoreError, ClientError
from loguru import logger

from mypy_boto3_ec2.type_defs import InstanceTypeDef

from ..aws_provider.image import create_image, get_root_device_name
from ..aws_provider.instance import delete_tags, run_instance, start_instances as start_ec2_instances, terminate_instances
from ..aws_provider.security_group import (
    authorize_ingress,
    create_security_group,
    delete_security_group,
    find_security_group_ids,
    revoke_ingress,
    self_ingress,
    tcp_ingress,
)
from ..aws_provider.volume import attach_volume, create_volume as create_ec2_volume
from ..fleet_config import HostConfig
from .errors import ProvisionError, ZoneConflictError
from .multiplex import Channel, fan_out, produce
from .region_snapshot import RegionSnapshot
from .tags import MESH_GROUP_NAME, SSH_GROUP_NAME, env_filters_for_resource, identity_tag_keys, tags_for_resource
from .types import Outcome
from .userdata import render_user_data
from .waiter import wait_until_image_available, wait_until_instances_in_state

API_ERRORS = (ClientError, BotoCoreError)

# data volumes are attached after the root device, in declaration order
DEVICE_PREFIX = "/dev/sd"
DEVICE_LETTERS = "fghijklmnop"


# ==================== Existing hosts ====================

def start_instances(snapshot: RegionSnapshot) -> List[Outcome]:
    result: List[Outcome] = []
    existing, _ = snapshot.existing()
    stopped, other = snapshot.split_instances_by_stopped(sorted(existing))

    for name, instance in other.items():
        status = instance['State']['Name']
        if status == 'running':
            logger.info(f"Instance {name} already in running state")
            result.append(Outcome.already_up(name))
        else:
            logger.error(f"Instance {name} in {status} state, can not be started")
            result.append(Outcome.failed(name, ProvisionError(f"instance in {status} state, can not be started", region=snapshot.name, host=name)))

    if stopped:
        names = sorted(stopped)
        instance_ids = [stopped[name]['InstanceId'] for name in names]
        try:
            start_ec2_instances(snapshot.client, instance_ids)
        except API_ERRORS as exc:
            logger.error(f"Cannot start instances {names} in region {snapshot.name}: {exc}")
            error = ProvisionError(f"cannot start instances {names}: {exc}", region=snapshot.name)
            result.extend(Outcome.failed(name, error) for name in names)
            return result

        logger.success(f"Called start on instances {names} in region {snapshot.name}")
        result.extend(Outcome.started(name) for name in names)

    return result


def start_instances_generator(snapshot: RegionSnapshot, cancel: threading.Event) -> Channel[Outcome]:
    def _work(ch: Channel[Outcome]):
        for outcome in start_instances(snapshot):
            if not ch.send(outcome):
                return

    return produce(cancel, _work, name=f"start-{snapshot.name}")


# ==================== Environment security groups ====================

def ensure_environment_security_groups(snapshot: RegionSnapshot) -> Tuple[bool, bool]:
    """
    Create the SSH and mesh groups of the environment if discovery did not find them.

    Must run before any concurrent instance creation in the region. Returns
    whether each group was created by this call.
    """
    ssh_created = mesh_created = False
    if not snapshot.groups.ssh_group_id:
        snapshot.groups.ssh_group_id = _create_ssh_security_group(snapshot)
        ssh_created = True
    if not snapshot.groups.mesh_group_id:
        snapshot.groups.mesh_group_id = _create_mesh_security_group(snapshot)
        mesh_created = True
    return ssh_created, mesh_created


def _create_ssh_security_group(snapshot: RegionSnapshot) -> str:
    env_name = snapshot.env.short_name
    try:
        group_id = create_security_group(snapshot.client, snapshot.vpc_id, f"SSH security group for env {snapshot.env.colon}",
                                         tags_for_resource(snapshot.env, SSH_GROUP_NAME))
        authorize_ingress(snapshot.client, group_id, tcp_ingress([(22, 22)]))
    except API_ERRORS as exc:
        raise ProvisionError(f"cannot create SSH security group for env {env_name}: {exc}", region=snapshot.name) from exc
    logger.success(f"Created SSH security group {group_id} for env {env_name} in region {snapshot.name}")
    return group_id


def _create_mesh_security_group(snapshot: RegionSnapshot) -> str:
    env_name = snapshot.env.short_name
    try:
        group_id = create_security_group(snapshot.client, snapshot.vpc_id, f"Mesh security group for env {snapshot.env.colon}",
                                         tags_for_resource(snapshot.env, MESH_GROUP_NAME))
        authorize_ingress(snapshot.client, group_id, self_ingress(group_id, snapshot.vpc_id))
    except API_ERRORS as exc:
        raise ProvisionError(f"cannot create mesh security group for env {env_name}: {exc}", region=snapshot.name) from exc
    logger.success(f"Created mesh security group {group_id} for env {env_name} in region {snapshot.name}")
    return group_id


def delete_environment_security_groups(snapshot: RegionSnapshot):
    env_name = snapshot.env.short_name
    groups = snapshot.groups
    if groups.ssh_group_id:
        try:
            delete_security_group(snapshot.client, groups.ssh_group_id)
        except API_ERRORS as exc:
            raise ProvisionError(f"cannot delete SSH security group for env {env_name}: {exc}", region=snapshot.name) from exc
        logger.success(f"Deleted SSH security group for env {env_name} in region {snapshot.name}")
        groups.ssh_group_id = ""

    if groups.mesh_group_id:
        try:
            # the self-referencing rule pins the group
            revoke_ingress(snapshot.client, groups.mesh_group_id, self_ingress(groups.mesh_group_id, snapshot.vpc_id))
            delete_security_group(snapshot.client, groups.mesh_group_id)
        except API_ERRORS as exc:
            raise ProvisionError(f"cannot delete mesh security group for env {env_name}: {exc}", region=snapshot.name) from exc
        logger.success(f"Deleted mesh security group for env {env_name} in region {snapshot.name}")
        groups.mesh_group_id = ""


def delete_environment_security_groups_if_possible(snapshot: RegionSnapshot) -> bool:
    """Best effort: delete the environment groups once no instance of the environment is left in the region."""
    if not snapshot.groups.ids():
        return False
    try:
        remaining = snapshot.count_environment_instances()
        if remaining > 0:
            logger.info(f"{remaining} instance(s) of env {snapshot.env.short_name} remain in region {snapshot.name}, keeping its security groups")
            return False
        delete_environment_security_groups(snapshot)
    except ProvisionError as exc:
        logger.error(f"{exc}")
        return False
    return True


# ==================== Not existing hosts ====================

def ensure_host_security_group(snapshot: RegionSnapshot, host: HostConfig) -> str:
    """Security group opening the host's declared ports; a group left by an earlier run is reused."""
    try:
        existing = find_security_group_ids(snapshot.client, env_filters_for_resource(snapshot.env, host.name))
    except API_ERRORS as exc:
        raise ProvisionError(f"cannot look up security group: {exc}", region=snapshot.name, host=host.name) from exc
    if existing:
        logger.info(f"Reusing security group {existing[0]} for host {host.name}")
        return existing[0]

    try:
        group_id = create_security_group(snapshot.client, snapshot.vpc_id, f"{host.name} ({snapshot.env.colon})",
                                         tags_for_resource(snapshot.env, host.name))
    except API_ERRORS as exc:
        raise ProvisionError(f"cannot create security group: {exc}", region=snapshot.name, host=host.name) from exc

    try:
        authorize_ingress(snapshot.client, group_id, tcp_ingress(host.port_ranges))
    except API_ERRORS as exc:
        # a group without its rules would be reused as is by the next run
        try:
            delete_security_group(snapshot.client, group_id)
        except API_ERRORS as cleanup_exc:
            logger.warning(f"Cannot delete security group {group_id} after failed ingress setup: {cleanup_exc}")
        raise ProvisionError(f"cannot set inbound rules: {exc}", region=snapshot.name, host=host.name) from exc

    logger.success(f"Created security group for host {host.name} with allowed ports {host.ports}")
    return group_id


def root_device_name_for(snapshot: RegionSnapshot, image_id: str, host_name: Optional[str] = None) -> str:
    if image_id in snapshot.root_devices:
        return snapshot.root_devices[image_id]
    try:
        return get_root_device_name(snapshot.client, image_id)
    except (LookupError, *API_ERRORS) as exc:
        raise ProvisionError(f"cannot get image infos for {image_id}: {exc}", region=snapshot.name, host=host_name) from exc


def availability_zone_for(snapshot: RegionSnapshot, host: HostConfig) -> Optional[str]:
    """Owned volumes that already exist pin the zone; all of them and the host's declared zone must agree."""
    zone = host.availability_zone or None
    for volume_name in host.volumes:
        volume = snapshot.ec2_volumes.get(volume_name)
        if volume is None:
            continue
        volume_zone = volume['AvailabilityZone']
        if zone is None:
            zone = volume_zone
        elif zone != volume_zone:
            raise ZoneConflictError(volume_name, volume_zone, zone, region=snapshot.name, host=host.name)
    return zone


def create_volume(snapshot: RegionSnapshot, volume_name: str, availability_zone: str, host_name: Optional[str] = None) -> str:
    volume = snapshot.volumes.get(volume_name)
    if volume is None:
        raise ProvisionError(f"volume {volume_name} is not declared in this region", region=snapshot.name, host=host_name)
    try:
        volume_id = create_ec2_volume(snapshot.client, availability_zone=availability_zone, size=volume.size,
                                      volume_type=volume.volume_type, tags=tags_for_resource(snapshot.env, volume_name))
    except API_ERRORS as exc:
        raise ProvisionError(f"cannot create volume {volume_name}: {exc}", region=snapshot.name, host=host_name) from exc
    logger.success(f"Created volume {volume_name} ({volume.size} GiB) in {availability_zone}: {volume_id}")
    return volume_id


def create_one_instance(snapshot: RegionSnapshot, host: HostConfig) -> InstanceTypeDef:
    groups = snapshot.groups
    if not groups.ssh_group_id or not groups.mesh_group_id:
        raise ProvisionError("environment security groups are not ensured", region=snapshot.name, host=host.name)
    security_group_ids = [groups.ssh_group_id, groups.mesh_group_id]
    if host.ports:
        security_group_ids.append(ensure_host_security_group(snapshot, host))

    device_name = root_device_name_for(snapshot, host.ami, host.name)
    availability_zone = availability_zone_for(snapshot, host)

    try:
        instance = run_instance(
            snapshot.client,
            image_id=host.ami,
            instance_type=host.instance_type,
            root_device_name=device_name,
            root_size=host.size,
            security_group_ids=security_group_ids,
            tags=tags_for_resource(snapshot.env, host.name),
            user_data=render_user_data(host.user, snapshot.authorized_keys),
            availability_zone=availability_zone,
        )
    except API_ERRORS as exc:
        raise ProvisionError(f"cannot create instance: {exc}", region=snapshot.name, host=host.name) from exc
    logger.success(f"Created instance {instance['InstanceId']} for host {host.name} in region {snapshot.name}")

    instance_zone = instance['Placement']['AvailabilityZone']
    for volume_name in host.volumes:
        if not snapshot.has_volume(volume_name):
            create_volume(snapshot, volume_name, instance_zone, host.name)
    return instance


def _create_outcome(snapshot: RegionSnapshot, host: HostConfig) -> Outcome:
    try:
        create_one_instance(snapshot, host)
    except ProvisionError as exc:
        logger.error(f"{exc}")
        return Outcome.failed(host.name, exc)
    return Outcome.created(host.name)


def create_instances_generator(snapshot: RegionSnapshot, cancel: threading.Event, *, max_workers: int = 16) -> Channel[Outcome]:
    hosts = [snapshot.hosts[name] for name in snapshot.host_names()]
    return fan_out(cancel, hosts, lambda host: _create_outcome(snapshot, host),
                   max_workers=max_workers, name=f"create-{snapshot.name}")


# ==================== Volume attachment ====================

def attach_volumes(snapshot: RegionSnapshot, host_name: str) -> List[str]:
    """Attach the host's declared volumes; failures are logged per volume. Returns the attached names."""
    attached = []
    host = snapshot.hosts[host_name]
    instance = snapshot.instances.get(host_name)
    if instance is None:
        logger.error(f"No instance for host {host_name} in region {snapshot.name}, cannot attach volumes {host.volumes}")
        return attached

    for index, volume_name in enumerate(host.volumes):
        if index >= len(DEVICE_LETTERS):
            logger.error(f"No device letter left for volume {volume_name} of host {host_name}")
            break
        volume = snapshot.ec2_volumes.get(volume_name)
        if volume is None:
            logger.error(f"Volume {volume_name} of host {host_name} not found in region {snapshot.name}")
            continue
        if any(a.get('InstanceId') == instance['InstanceId'] for a in volume.get('Attachments', [])):
            logger.info(f"Volume {volume_name} already attached to {host_name}")
            attached.append(volume_name)
            continue

        device = DEVICE_PREFIX + DEVICE_LETTERS[index]
        try:
            device = attach_volume(snapshot.client, volume['VolumeId'], instance['InstanceId'], device)
        except API_ERRORS as exc:
            logger.error(f"Cannot attach volume {volume_name} to instance {host_name}: {exc}")
            continue
        logger.success(f"Volume {volume_name} is attached to {host_name} under device {device}")
        attached.append(volume_name)
    return attached


# ==================== Tear-down ====================

def destroy_instances(
    snapshot: RegionSnapshot,
    *,
    cancel: Optional[threading.Event] = None,
    timeout: Optional[float] = 600,
    poll_interval: float = 0.5,
):
    """
    Terminate the region's declared instances, then clean their security groups and tags.

    Raises:
        ProvisionError: the terminate call or the wait for termination failed
    """
    not_existing, _ = snapshot.not_existing()
    if not_existing:
        logger.info(f"Instances {sorted(not_existing)} already terminated or do not exist in region {snapshot.name}")

    existing, _ = snapshot.existing()
    if existing:
        # the waiter replaces snapshot.instances
        instances = dict(snapshot.instances)
        names = sorted(existing)
        instance_ids = [instances[name]['InstanceId'] for name in names]
        try:
            terminate_instances(snapshot.client, instance_ids)
        except API_ERRORS as exc:
            raise ProvisionError(f"cannot terminate instances {names}: {exc}", region=snapshot.name) from exc
        logger.success(f"Called terminate for instances {names} in region {snapshot.name}")

        logger.info(f"Transitioning instances {names} to terminated, wait...")
        wait_until_instances_in_state(snapshot, 'terminated', names, cancel=cancel, timeout=timeout, poll_interval=poll_interval)

        shared_groups = snapshot.groups.ids()
        for name in names:
            for group in instances[name].get('SecurityGroups', []):
                if group['GroupId'] in shared_groups:
                    continue
                try:
                    delete_security_group(snapshot.client, group['GroupId'])
                    logger.success(f"Deleted security group {group['GroupId']} of {name}")
                except API_ERRORS as exc:
                    logger.error(f"Could not delete security group {group['GroupId']} of {name}: {exc}")

        try:
            delete_tags(snapshot.client, instance_ids, identity_tag_keys())
            logger.info(f"Deleted identity tags of {names}")
        except API_ERRORS as exc:
            logger.warning(f"Could not delete identity tags of {names}: {exc}")

    delete_environment_security_groups_if_possible(snapshot)


# ==================== Image bake ====================

def image_name_for(snapshot: RegionSnapshot, host: HostConfig) -> str:
    return host.image_name or f"{host.name}-{snapshot.env.commit}"


def create_host_image(snapshot: RegionSnapshot, host_name: str, *, cancel: Optional[threading.Event] = None,
                      timeout: Optional[float] = 3600, poll_interval: float = 15) -> str:
    host = snapshot.hosts[host_name]
    instance = snapshot.instances.get(host_name)
    if instance is None:
        raise ProvisionError("no live instance to create an image from", region=snapshot.name, host=host_name)

    image_name = image_name_for(snapshot, host)
    try:
        image_id = create_image(snapshot.client, instance['InstanceId'], image_name, tags_for_resource(snapshot.env, image_name))
    except API_ERRORS as exc:
        raise ProvisionError(f"cannot create image {image_name}: {exc}", region=snapshot.name, host=host_name) from exc
    logger.info(f"Creating image {image_name} ({image_id}) from {host_name}, wait...")

    try:
        wait_until_image_available(snapshot, image_id, cancel=cancel, timeout=timeout, poll_interval=poll_interval)
    except API_ERRORS as exc:
        raise ProvisionError(f"cannot get state of image {image_name}: {exc}", region=snapshot.name, host=host_name) from exc
    return image_id


def _image_outcome(snapshot: RegionSnapshot, host_name: str, cancel: threading.Event, timeout: Optional[float], poll_interval: float) -> Outcome:
    try:
        create_host_image(snapshot, host_name, cancel=cancel, timeout=timeout, poll_interval=poll_interval)
    except ProvisionError as exc:
        logger.error(f"{exc}")
        return Outcome.failed(host_name, exc)
    return Outcome.created(host_name)


def image_instances_generator(snapshot: RegionSnapshot, cancel: threading.Event, *, timeout: Optional[float] = 3600,
                              poll_interval: float = 15, max_workers: int = 16) -> Channel[Outcome]:
    return fan_out(cancel, snapshot.host_names(),
                   lambda name: _image_outcome(snapshot, name, cancel, timeout, poll_interval),
                   max_workers=max_workers, name=f"image-{snapshot.name}")
