import threading

import pytest

from fleet_provisioner.reconcile.errors import ProvisionError, WaitTimeoutError
from fleet_provisioner.reconcile.region_snapshot import build_region_snapshot
from fleet_provisioner.reconcile.tags import tags_for_resource
from fleet_provisioner.reconcile.waiter import (
    unsatisfied_instances,
    wait_until_image_available,
    wait_until_instances_in_state,
)

from conftest import make_fleet

REGION = "eu-west-1"


@pytest.fixture
def snapshot(cloud, aws, env):
    fleet = make_fleet(hosts=[{"name": "a"}, {"name": "b"}])
    return build_region_snapshot(aws, REGION, env, fleet.hosts_by_region()[REGION])


def test_absent_instance_counts_as_terminated():
    instances = {"a": {"State": {"Name": "running"}}}

    assert unsatisfied_instances(instances, "terminated", ["a", "b"]) == ["a"]
    assert unsatisfied_instances(instances, "running", ["a", "b"]) == ["b"]


def test_wait_until_running(cloud, env, snapshot):
    ec2 = cloud.region(REGION)
    ec2.transitioning.add(ec2.add_instance(tags_for_resource(env, "a"), state="pending"))
    ec2.transitioning.add(ec2.add_instance(tags_for_resource(env, "b"), state="pending"))

    wait_until_instances_in_state(snapshot, "running", ["a", "b"], timeout=5, poll_interval=0.01)

    assert {name: i["State"]["Name"] for name, i in snapshot.instances.items()} == {"a": "running", "b": "running"}


def test_wait_timeout_names_unsatisfied_hosts(cloud, env, snapshot):
    cloud.region(REGION).add_instance(tags_for_resource(env, "a"), state="running")

    with pytest.raises(WaitTimeoutError) as exc_info:
        wait_until_instances_in_state(snapshot, "running", ["a", "b"], timeout=0.05, poll_interval=0.01)

    assert exc_info.value.names == ["b"]
    assert exc_info.value.target == "running"
    assert exc_info.value.region == REGION
    assert isinstance(exc_info.value, ProvisionError)


def test_wait_cancelled(cloud, snapshot):
    cancel = threading.Event()
    cancel.set()

    with pytest.raises(WaitTimeoutError, match="cancelled"):
        wait_until_instances_in_state(snapshot, "running", ["a"], cancel=cancel, timeout=None, poll_interval=0.01)


def test_image_failure_stops_wait(cloud, snapshot):
    ec2 = cloud.region(REGION)
    ec2.images["ami-broken"] = {"ImageId": "ami-broken", "State": "failed", "Name": "broken"}

    with pytest.raises(ProvisionError, match="creation failed"):
        wait_until_image_available(snapshot, "ami-broken", timeout=1, poll_interval=0.01)
