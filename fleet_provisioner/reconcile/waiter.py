# pyright: reportTypedDictNotRequiredAccess=false

import threading
from typing import Iterable, List, Mapping, Optional

from loguru import logger

from mypy_boto3_ec2.type_defs import InstanceTypeDef

from utils.wait_until import WaitUntilCancelledError, WaitUntilTimeoutError, wait_until

from ..aws_provider.image import get_image_state
from .errors import ProvisionError, WaitTimeoutError
from .region_snapshot import RegionSnapshot

POLL_INTERVAL = 0.5

VOLUME_READY_STATES = ('available', 'in-use')


def unsatisfied_instances(instances: Mapping[str, InstanceTypeDef], state: str, names: Iterable[str]) -> List[str]:
    """Names whose instance is not in ``state``; a missing instance satisfies 'terminated'."""
    result = []
    for name in names:
        instance = instances.get(name)
        if instance is None:
            if state != 'terminated':
                result.append(name)
        elif instance['State']['Name'] != state:
            result.append(name)
    return result


def wait_until_instances_in_state(
    snapshot: RegionSnapshot,
    state: str,
    names: Iterable[str],
    *,
    cancel: Optional[threading.Event] = None,
    timeout: Optional[float] = 600,
    poll_interval: float = POLL_INTERVAL,
):
    """
    Re-list the region's instances every ``poll_interval`` until all ``names`` reach ``state``.

    The snapshot's instance map is replaced on every poll.

    Raises:
        WaitTimeoutError: timeout elapsed or ``cancel`` set
        ProvisionError: the instance listing failed
    """
    names = list(names)
    if not names:
        return

    def _reached() -> bool:
        snapshot.refresh_instances()
        return not unsatisfied_instances(snapshot.instances, state, names)

    try:
        wait_until(_reached, timeout=timeout, retry_interval=poll_interval, cancel=cancel, first_delay=True)
    except WaitUntilCancelledError:
        raise WaitTimeoutError(snapshot.name, unsatisfied_instances(snapshot.instances, state, names), state, reason="cancelled") from None
    except WaitUntilTimeoutError:
        raise WaitTimeoutError(snapshot.name, unsatisfied_instances(snapshot.instances, state, names), state) from None

    logger.info(f"Instances {names} in region {snapshot.name} are now {state}")


def wait_until_volumes_ready(
    snapshot: RegionSnapshot,
    volume_names: Iterable[str],
    *,
    cancel: Optional[threading.Event] = None,
    timeout: Optional[float] = 600,
    poll_interval: float = POLL_INTERVAL,
):
    """Re-list the region's volumes until every named volume exists and is attachable or attached."""
    volume_names = list(volume_names)
    if not volume_names:
        return

    def _pending() -> List[str]:
        return [name for name in volume_names
                if name not in snapshot.ec2_volumes or snapshot.ec2_volumes[name]['State'] not in VOLUME_READY_STATES]

    def _ready() -> bool:
        snapshot.refresh_volumes()
        return not _pending()

    try:
        wait_until(_ready, timeout=timeout, retry_interval=poll_interval, cancel=cancel)
    except WaitUntilCancelledError:
        raise WaitTimeoutError(snapshot.name, _pending(), 'available', reason="cancelled") from None
    except WaitUntilTimeoutError:
        raise WaitTimeoutError(snapshot.name, _pending(), 'available') from None


def wait_until_image_available(
    snapshot: RegionSnapshot,
    image_id: str,
    *,
    cancel: Optional[threading.Event] = None,
    timeout: Optional[float] = 3600,
    poll_interval: float = 15,
):
    """Poll an image until it is available; a 'failed' image raises immediately."""
    states = []

    def _available() -> bool:
        state = get_image_state(snapshot.client, image_id)
        states.append(state)
        if state == 'failed':
            raise ProvisionError(f"image {image_id} creation failed", region=snapshot.name)
        return state == 'available'

    try:
        wait_until(_available, timeout=timeout, retry_interval=poll_interval, cancel=cancel)
    except WaitUntilCancelledError:
        raise WaitTimeoutError(snapshot.name, [image_id], 'available', reason="cancelled") from None
    except WaitUntilTimeoutError:
        last = states[-1] if states else "unknown"
        raise WaitTimeoutError(snapshot.name, [image_id], 'available', reason=f"timed out in state {last}") from None
