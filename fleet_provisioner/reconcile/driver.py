"""
Commands reconciling the declared fleet with the live state of every region it spans.

Every command starts from fresh region snapshots; nothing is persisted between
two invocations besides the tags carried by the remote resources.
"""
from concurrent.futures import ThreadPoolExecutor, as_completed
import threading
from typing import Dict, Iterable, List, Optional, Set

from botocore.exceptions import BotoCoreError, ClientError
from loguru import logger

from ..aws_provider.client_factory import AwsClient
from ..aws_provider.volume import delete_volume
from ..fleet_config import FleetConfig
from .errors import ProvisionError
from .lifecycle import (
    attach_volumes,
    create_instances_generator,
    destroy_instances,
    ensure_environment_security_groups,
    image_instances_generator,
    start_instances_generator,
)
from .multiplex import Channel, fan_out, multiplex, produce
from .reconcile_config import ReconcileConfig
from .region_snapshot import RegionSnapshot, build_snapshots
from .types import INITIAL_STATES, InitialStatus, InstanceInfo, Outcome, OutcomeKind
from .waiter import wait_until_instances_in_state, wait_until_volumes_ready


def aggregate_error(command: str, errors: List[ProvisionError]) -> ProvisionError:
    details = "\n".join(f"  {exc}" for exc in errors)
    return ProvisionError(f"{command} failed with {len(errors)} error(s):\n{details}")


def _dropped_region_errors(fleet: FleetConfig, regions: Iterable[str], snapshots: Dict[str, RegionSnapshot]) -> List[ProvisionError]:
    hosts_by_region = fleet.hosts_by_region()
    return [ProvisionError(f"region could not be discovered, hosts {sorted(hosts_by_region.get(region, {}))} not reconciled", region=region)
            for region in sorted(set(regions) - set(snapshots))]


def _snapshots_for_hosts(fleet: FleetConfig, aws: AwsClient, config: ReconcileConfig, cancel: threading.Event,
                         with_keys: bool = False) -> Dict[str, RegionSnapshot]:
    hosts_by_region = fleet.hosts_by_region()
    return build_snapshots(
        aws,
        fleet.environment_id(),
        hosts_by_region.keys(),
        hosts_by_region,
        fleet.volumes_by_region(),
        cancel,
        authorized_keys=fleet.environment.public_keys() if with_keys else (),
        max_regions=config.max_regions,
    )


# ==================== Bring-up ====================

def _region_outcomes(snapshot: RegionSnapshot, cancel: threading.Event, config: ReconcileConfig) -> List[Channel[Outcome]]:
    channels: List[Channel[Outcome]] = []

    existing_hosts, existing_volumes = snapshot.existing()
    if existing_hosts:
        channels.append(start_instances_generator(snapshot.filter(existing_hosts, existing_volumes), cancel))

    not_existing_hosts, not_existing_volumes = snapshot.not_existing()
    if not_existing_hosts:
        view = snapshot.filter(not_existing_hosts, not_existing_volumes)

        def _create(ch: Channel[Outcome]):
            # groups are shared by all hosts of the region, ensure them before the fan-out
            try:
                ensure_environment_security_groups(snapshot)
            except ProvisionError as exc:
                logger.error(f"{exc}")
                for name in view.host_names():
                    if not ch.send(Outcome.failed(name, exc)):
                        return
                return

            for outcome in create_instances_generator(view, cancel, max_workers=config.max_hosts_per_region):
                if not ch.send(outcome):
                    return

        channels.append(produce(cancel, _create, name=f"create-{snapshot.name}"))

    return channels


def _wait_running(snapshots: Dict[str, RegionSnapshot], names_by_region: Dict[str, List[str]],
                  cancel: threading.Event, config: ReconcileConfig):
    errors: List[ProvisionError] = []
    pending = {region: names for region, names in names_by_region.items() if names}
    if not pending:
        return

    with ThreadPoolExecutor(max_workers=min(config.max_regions, len(pending)), thread_name_prefix="wait") as executor:
        futures = {
            executor.submit(wait_until_instances_in_state, snapshots[region], 'running', names,
                            cancel=cancel, timeout=config.wait_timeout, poll_interval=config.poll_interval): region
            for region, names in pending.items()
        }
        for future in as_completed(futures):
            try:
                future.result()
            except ProvisionError as exc:
                logger.error(f"{exc}")
                errors.append(exc)

    if errors:
        raise aggregate_error("waiting for instances to run", errors)


def _attach_created_volumes(snapshot: RegionSnapshot, names: List[str], cancel: threading.Event, config: ReconcileConfig):
    volume_names = [volume for name in names for volume in snapshot.hosts[name].volumes]
    if not volume_names:
        return
    try:
        wait_until_volumes_ready(snapshot, volume_names, cancel=cancel, timeout=config.wait_timeout, poll_interval=config.poll_interval)
    except ProvisionError as exc:
        # attach whatever is ready
        logger.warning(f"{exc}")

    for name in names:
        if snapshot.hosts[name].volumes:
            attach_volumes(snapshot, name)


def bring_up(fleet: FleetConfig, aws: AwsClient, config: Optional[ReconcileConfig] = None,
             cancel: Optional[threading.Event] = None) -> InitialStatus:
    """
    Create missing hosts and start stopped ones, in every region of the fleet.

    All or nothing: any host in error fails the command once every outcome is
    known. Instances already created for other hosts are kept, the next
    bring-up finds them.

    Raises:
        ProvisionError: some host could not be brought up
    """
    config = config or ReconcileConfig()
    cancel = cancel or threading.Event()
    hosts_by_region = fleet.hosts_by_region()

    snapshots = _snapshots_for_hosts(fleet, aws, config, cancel, with_keys=True)
    errors = _dropped_region_errors(fleet, hosts_by_region.keys(), snapshots)
    if errors:
        # nothing is touched unless every region could be discovered
        raise aggregate_error("bring-up", errors)

    channels: List[Channel[Outcome]] = []
    for snapshot in snapshots.values():
        channels.extend(_region_outcomes(snapshot, cancel, config))

    region_of = {name: region for region, hosts in hosts_by_region.items() for name in hosts}
    outcomes: Dict[str, Outcome] = {}
    try:
        for outcome in multiplex(cancel, *channels):
            logger.debug(f"Host {outcome.name} in {region_of[outcome.name]}: {outcome.kind.value}")
            outcomes[outcome.name] = outcome
            if outcome.in_error:
                assert outcome.error is not None
                errors.append(outcome.error)
    except BaseException:
        # stop the producers still running
        cancel.set()
        raise

    if cancel.is_set():
        raise ProvisionError("bring-up cancelled")
    if errors:
        created = sorted(name for name, outcome in outcomes.items() if outcome.kind is OutcomeKind.CREATED)
        if created:
            logger.warning(f"Instances created for {created} are kept")
        raise aggregate_error("bring-up", errors)

    transitioned: Dict[str, List[str]] = {}
    created_by_region: Dict[str, List[str]] = {}
    for name, outcome in sorted(outcomes.items()):
        region = region_of[name]
        if outcome.kind in (OutcomeKind.CREATED, OutcomeKind.STARTED):
            transitioned.setdefault(region, []).append(name)
        if outcome.kind is OutcomeKind.CREATED:
            created_by_region.setdefault(region, []).append(name)
    _wait_running(snapshots, transitioned, cancel, config)

    result = InitialStatus()
    categories = {
        OutcomeKind.CREATED: result.not_existing,
        OutcomeKind.STARTED: result.down,
        OutcomeKind.ALREADY_UP: result.up,
    }
    for snapshot in snapshots.values():
        for name, info in snapshot.instance_infos().items():
            outcome = outcomes.get(name)
            if outcome is None:
                continue
            info.initial_state = INITIAL_STATES.get(outcome.kind)
            categories.get(outcome.kind, result.other)[name] = info

    if created_by_region:
        with ThreadPoolExecutor(max_workers=min(config.max_regions, len(created_by_region)), thread_name_prefix="attach") as executor:
            futures = [executor.submit(_attach_created_volumes, snapshots[region], names, cancel, config)
                       for region, names in created_by_region.items()]
            for future in as_completed(futures):
                future.result()

    return result


# ==================== Tear-down ====================

def tear_down(fleet: FleetConfig, aws: AwsClient, config: Optional[ReconcileConfig] = None,
              cancel: Optional[threading.Event] = None):
    """Terminate every declared host; failures are logged per region and never raised."""
    config = config or ReconcileConfig()
    cancel = cancel or threading.Event()
    snapshots = _snapshots_for_hosts(fleet, aws, config, cancel)

    def _destroy(snapshot: RegionSnapshot) -> Optional[ProvisionError]:
        try:
            destroy_instances(snapshot, cancel=cancel, timeout=config.wait_timeout, poll_interval=config.poll_interval)
        except ProvisionError as exc:
            return exc
        return None

    for error in fan_out(cancel, snapshots.values(), _destroy, max_workers=config.max_regions, name="destroy"):
        if error is not None:
            logger.error(f"Tear-down incomplete: {error}")


# ==================== Status ====================

def status(fleet: FleetConfig, aws: AwsClient, config: Optional[ReconcileConfig] = None,
           cancel: Optional[threading.Event] = None) -> Dict[str, InstanceInfo]:
    config = config or ReconcileConfig()
    cancel = cancel or threading.Event()
    snapshots = _snapshots_for_hosts(fleet, aws, config, cancel)

    result: Dict[str, InstanceInfo] = {}
    for snapshot in snapshots.values():
        result.update(snapshot.instance_infos())
    return result


# ==================== Image bake ====================

def bake_images(fleet: FleetConfig, aws: AwsClient, config: Optional[ReconcileConfig] = None,
                cancel: Optional[threading.Event] = None):
    """
    Create one image per declared host from its live instance.

    Raises:
        ProvisionError: the image of some host could not be created
    """
    config = config or ReconcileConfig()
    cancel = cancel or threading.Event()
    snapshots = _snapshots_for_hosts(fleet, aws, config, cancel)
    errors = _dropped_region_errors(fleet, fleet.hosts_by_region().keys(), snapshots)

    channels = [
        image_instances_generator(snapshot, cancel, timeout=config.image_wait_timeout,
                                  poll_interval=config.image_poll_interval, max_workers=config.max_hosts_per_region)
        for snapshot in snapshots.values()
    ]
    try:
        for outcome in multiplex(cancel, *channels):
            if outcome.in_error:
                assert outcome.error is not None
                errors.append(outcome.error)
            else:
                logger.success(f"Image of host {outcome.name} is available")
    except BaseException:
        cancel.set()
        raise

    if cancel.is_set():
        raise ProvisionError("image creation cancelled")
    if errors:
        raise aggregate_error("image creation", errors)


# ==================== Volume destroy ====================

def destroy_volumes(fleet: FleetConfig, aws: AwsClient, names: Optional[Iterable[str]] = None,
                    config: Optional[ReconcileConfig] = None, cancel: Optional[threading.Event] = None) -> List[str]:
    """
    Delete the named volumes, by default every declared one, wherever they are found.

    Best effort: names found nowhere are warned about, failed deletions are
    logged. Returns the deleted names.
    """
    config = config or ReconcileConfig()
    cancel = cancel or threading.Event()
    volumes_by_region = fleet.volumes_by_region()
    wanted: Set[str] = set(names) if names is not None else {volume.name for volume in fleet.volumes}

    snapshots = build_snapshots(aws, fleet.environment_id(), volumes_by_region.keys(), {}, volumes_by_region, cancel,
                                max_regions=config.max_regions)

    targets = [(snapshot, name) for snapshot in snapshots.values() for name in sorted(wanted) if snapshot.has_volume(name)]
    for name in sorted(wanted - {name for _, name in targets}):
        logger.warning(f"Volume {name} not found, nothing to delete")

    def _delete(target) -> Optional[ProvisionError]:
        snapshot, name = target
        volume_id = snapshot.ec2_volumes[name]['VolumeId']
        try:
            delete_volume(snapshot.client, volume_id)
        except (ClientError, BotoCoreError) as exc:
            return ProvisionError(f"cannot delete volume {name} ({volume_id}): {exc}", region=snapshot.name)
        logger.success(f"Deleted volume {name} ({volume_id}) in region {snapshot.name}")
        return None

    deleted: List[str] = []
    results = fan_out(cancel, targets, lambda target: (target[1], _delete(target)),
                      max_workers=config.max_hosts_per_region, name="delete-volume")
    for name, error in results:
        if error is None:
            deleted.append(name)
        else:
            logger.error(f"{error}")
    return sorted(deleted)
