import copy
from fnmatch import fnmatch
import itertools
import threading
from typing import Any, Dict, List, Optional

from botocore.exceptions import ClientError
import pytest

from fleet_provisioner.aws_provider.client_factory import AwsClient
from fleet_provisioner.fleet_config import FleetConfig
from fleet_provisioner.reconcile.reconcile_config import ReconcileConfig
from fleet_provisioner.reconcile.tags import EnvironmentId

AMI = "ami-0123456789"
ROOT_DEVICE = "/dev/xvda"

# instances and volumes settle one describe call after a transition
_SETTLE = {
    "pending": "running",
    "stopping": "stopped",
    "shutting-down": "terminated",
}

_ids = itertools.count(1)


def _new_id(prefix: str) -> str:
    return f"{prefix}-{next(_ids):08x}"


def client_error(operation: str, code: str = "InternalError", message: str = "boom") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": message}}, operation)


def _matches(resource: Dict[str, Any], filters: Optional[List[Dict[str, Any]]]) -> bool:
    tags = {tag["Key"]: tag["Value"] for tag in resource.get("Tags", [])}
    for f in filters or []:
        name, values = f["Name"], f["Values"]
        if name.startswith("tag:"):
            if tags.get(name[4:]) not in values:
                return False
        elif name == "image-id":
            if resource.get("ImageId") not in values:
                return False
        elif name == "name":
            if not any(fnmatch(resource.get("Name", ""), v) for v in values):
                return False
        elif name == "architecture":
            if resource.get("Architecture") not in values:
                return False
        elif name == "isDefault":
            if str(resource.get("IsDefault", False)).lower() not in values:
                return False
        else:
            raise AssertionError(f"unsupported filter {name}")
    return True


class _Paginator:
    def __init__(self, method):
        self._method = method

    def paginate(self, **kwargs):
        return [self._method(**kwargs)]


class FakeEC2:
    """In-memory EC2 of one region, recording every mutating call."""

    def __init__(self, region: str):
        self.region = region
        self.lock = threading.Lock()
        self.calls: List[tuple] = []
        self.failures: Dict[str, ClientError] = {}

        self.vpcs: List[Dict[str, Any]] = [{"VpcId": "vpc-default", "IsDefault": True}]
        self.instances: Dict[str, Dict[str, Any]] = {}
        self.volumes: Dict[str, Dict[str, Any]] = {}
        self.groups: Dict[str, Dict[str, Any]] = {}
        self.addresses: List[Dict[str, Any]] = []
        self.transitioning: set = set()
        self.images: Dict[str, Dict[str, Any]] = {
            AMI: {"ImageId": AMI, "RootDeviceName": ROOT_DEVICE, "State": "available", "Name": "base",
                  "Architecture": "x86_64", "CreationDate": "2024-01-01T00:00:00.000Z"},
        }

    def _record(self, name: str, **kwargs):
        self.calls.append((name, kwargs))
        if name in self.failures:
            raise self.failures[name]

    def calls_to(self, name: str) -> List[dict]:
        return [kwargs for call, kwargs in self.calls if call == name]

    def _settle(self, resource: Dict[str, Any]):
        # only transitions started through the API settle, seeded states stay
        if resource["InstanceId"] not in self.transitioning:
            return
        self.transitioning.discard(resource["InstanceId"])
        state = resource["State"]
        state["Name"] = _SETTLE.get(state["Name"], state["Name"])

    def get_paginator(self, operation: str):
        return _Paginator(getattr(self, operation))

    # ---------- instances ----------

    def describe_instances(self, Filters=None, **_):
        with self.lock:
            self._record("describe_instances")
            found = []
            for instance in self.instances.values():
                self._settle(instance)
                if _matches(instance, Filters):
                    found.append(copy.deepcopy(instance))
            return {"Reservations": [{"Instances": found}] if found else []}

    def run_instances(self, ImageId, InstanceType, SecurityGroupIds, TagSpecifications, UserData, Placement=None, **kwargs):
        with self.lock:
            self._record("run_instances", ImageId=ImageId, InstanceType=InstanceType, SecurityGroupIds=SecurityGroupIds,
                         TagSpecifications=TagSpecifications, UserData=UserData, Placement=Placement, **kwargs)
            instance_id = _new_id("i")
            tags = next(spec["Tags"] for spec in TagSpecifications if spec["ResourceType"] == "instance")
            zone = (Placement or {}).get("AvailabilityZone", f"{self.region}a")
            instance = {
                "InstanceId": instance_id,
                "ImageId": ImageId,
                "InstanceType": InstanceType,
                "State": {"Name": "pending"},
                "Tags": copy.deepcopy(tags),
                "Placement": {"AvailabilityZone": zone},
                "SecurityGroups": [{"GroupId": gid} for gid in SecurityGroupIds],
                "PublicIpAddress": f"54.0.0.{len(self.instances) + 1}",
                "NetworkInterfaces": [{"PrivateIpAddress": f"10.0.0.{len(self.instances) + 1}"}],
            }
            self.instances[instance_id] = instance
            self.transitioning.add(instance_id)
            return {"Instances": [copy.deepcopy(instance)]}

    def start_instances(self, InstanceIds):
        with self.lock:
            self._record("start_instances", InstanceIds=InstanceIds)
            for instance_id in InstanceIds:
                self.instances[instance_id]["State"]["Name"] = "pending"
                self.transitioning.add(instance_id)
            return {}

    def terminate_instances(self, InstanceIds):
        with self.lock:
            self._record("terminate_instances", InstanceIds=InstanceIds)
            for instance_id in InstanceIds:
                self.instances[instance_id]["State"]["Name"] = "shutting-down"
                self.transitioning.add(instance_id)
                for volume in self.volumes.values():
                    volume["Attachments"] = [a for a in volume.get("Attachments", []) if a["InstanceId"] != instance_id]
                    if not volume["Attachments"]:
                        volume["State"] = "available"
            return {}

    def associate_address(self, InstanceId, PublicIp):
        with self.lock:
            self._record("associate_address", InstanceId=InstanceId, PublicIp=PublicIp)
            self.instances[InstanceId]["PublicIpAddress"] = PublicIp
            return {}

    def delete_tags(self, Resources, Tags):
        with self.lock:
            self._record("delete_tags", Resources=Resources, Tags=Tags)
            keys = {tag["Key"] for tag in Tags}
            for resource_id in Resources:
                resource = self.instances.get(resource_id)
                if resource is not None:
                    resource["Tags"] = [tag for tag in resource["Tags"] if tag["Key"] not in keys]
            return {}

    # ---------- volumes ----------

    def describe_volumes(self, Filters=None, **_):
        with self.lock:
            self._record("describe_volumes")
            for volume in self.volumes.values():
                if volume["State"] == "creating":
                    volume["State"] = "available"
            return {"Volumes": [copy.deepcopy(v) for v in self.volumes.values() if _matches(v, Filters)]}

    def create_volume(self, AvailabilityZone, Size, VolumeType, TagSpecifications):
        with self.lock:
            self._record("create_volume", AvailabilityZone=AvailabilityZone, Size=Size, VolumeType=VolumeType,
                         TagSpecifications=TagSpecifications)
            volume_id = _new_id("vol")
            self.volumes[volume_id] = {
                "VolumeId": volume_id,
                "AvailabilityZone": AvailabilityZone,
                "Size": Size,
                "VolumeType": VolumeType,
                "State": "creating",
                "Attachments": [],
                "Tags": copy.deepcopy(TagSpecifications[0]["Tags"]),
            }
            return {"VolumeId": volume_id}

    def attach_volume(self, Device, InstanceId, VolumeId):
        with self.lock:
            self._record("attach_volume", Device=Device, InstanceId=InstanceId, VolumeId=VolumeId)
            volume = self.volumes[VolumeId]
            volume["State"] = "in-use"
            volume["Attachments"].append({"InstanceId": InstanceId, "Device": Device})
            return {"Device": Device}

    def delete_volume(self, VolumeId):
        with self.lock:
            self._record("delete_volume", VolumeId=VolumeId)
            del self.volumes[VolumeId]
            return {}

    # ---------- security groups ----------

    def describe_security_groups(self, Filters=None, **_):
        with self.lock:
            self._record("describe_security_groups")
            return {"SecurityGroups": [copy.deepcopy(g) for g in self.groups.values() if _matches(g, Filters)]}

    def create_security_group(self, GroupName, Description, VpcId, TagSpecifications):
        with self.lock:
            self._record("create_security_group", GroupName=GroupName, VpcId=VpcId, TagSpecifications=TagSpecifications)
            group_id = _new_id("sg")
            self.groups[group_id] = {
                "GroupId": group_id,
                "GroupName": GroupName,
                "VpcId": VpcId,
                "IpPermissions": [],
                "Tags": copy.deepcopy(TagSpecifications[0]["Tags"]),
            }
            return {"GroupId": group_id}

    def authorize_security_group_ingress(self, GroupId, IpPermissions):
        with self.lock:
            self._record("authorize_security_group_ingress", GroupId=GroupId, IpPermissions=IpPermissions)
            self.groups[GroupId]["IpPermissions"].extend(copy.deepcopy(IpPermissions))
            return {}

    def revoke_security_group_ingress(self, GroupId, IpPermissions):
        with self.lock:
            self._record("revoke_security_group_ingress", GroupId=GroupId, IpPermissions=IpPermissions)
            self.groups[GroupId]["IpPermissions"] = [p for p in self.groups[GroupId]["IpPermissions"] if p not in IpPermissions]
            return {}

    def delete_security_group(self, GroupId):
        with self.lock:
            self._record("delete_security_group", GroupId=GroupId)
            for instance in self.instances.values():
                if instance["State"]["Name"] != "terminated" and any(g["GroupId"] == GroupId for g in instance["SecurityGroups"]):
                    raise client_error("DeleteSecurityGroup", "DependencyViolation", f"{GroupId} in use")
            del self.groups[GroupId]
            return {}

    # ---------- network ----------

    def describe_vpcs(self, Filters=None):
        with self.lock:
            self._record("describe_vpcs")
            return {"Vpcs": [copy.deepcopy(v) for v in self.vpcs if _matches(v, Filters)]}

    def create_default_vpc(self):
        with self.lock:
            self._record("create_default_vpc")
            vpc = {"VpcId": _new_id("vpc"), "IsDefault": True}
            self.vpcs.append(vpc)
            return {"Vpc": copy.deepcopy(vpc)}

    def describe_addresses(self):
        with self.lock:
            self._record("describe_addresses")
            return {"Addresses": copy.deepcopy(self.addresses)}

    # ---------- images ----------

    def describe_images(self, Filters=None, ImageIds=None, Owners=None, MaxResults=None, NextToken=None):
        with self.lock:
            self._record("describe_images")
            found = []
            for image in self.images.values():
                if ImageIds is not None and image["ImageId"] not in ImageIds:
                    continue
                if Owners is not None and image.get("OwnerId") not in Owners:
                    continue
                if not _matches(image, Filters):
                    continue
                if image["State"] == "pending":
                    image["State"] = "available"
                found.append(copy.deepcopy(image))
            return {"Images": found}

    def create_image(self, InstanceId, Name, NoReboot, TagSpecifications):
        with self.lock:
            self._record("create_image", InstanceId=InstanceId, Name=Name, NoReboot=NoReboot, TagSpecifications=TagSpecifications)
            image_id = _new_id("ami")
            self.images[image_id] = {"ImageId": image_id, "RootDeviceName": ROOT_DEVICE, "State": "pending", "Name": Name,
                                     "Architecture": "x86_64", "Tags": copy.deepcopy(TagSpecifications[0]["Tags"])}
            return {"ImageId": image_id}

    def describe_regions(self, AllRegions=False):
        return {"Regions": []}

    # ---------- helpers for tests ----------

    def live_instances(self) -> List[Dict[str, Any]]:
        return [i for i in self.instances.values() if i["State"]["Name"] != "terminated"]

    def add_instance(self, tags, state: str = "running", zone: Optional[str] = None, group_ids=()) -> str:
        instance_id = _new_id("i")
        self.instances[instance_id] = {
            "InstanceId": instance_id,
            "ImageId": AMI,
            "State": {"Name": state},
            "Tags": copy.deepcopy(tags),
            "Placement": {"AvailabilityZone": zone or f"{self.region}a"},
            "SecurityGroups": [{"GroupId": gid} for gid in group_ids],
            "PublicIpAddress": "54.1.1.1",
            "NetworkInterfaces": [{"PrivateIpAddress": "10.1.1.1"}],
        }
        return instance_id

    def add_volume(self, tags, zone: str, size: int = 20) -> str:
        volume_id = _new_id("vol")
        self.volumes[volume_id] = {
            "VolumeId": volume_id,
            "AvailabilityZone": zone,
            "Size": size,
            "VolumeType": "gp3",
            "State": "available",
            "Attachments": [],
            "Tags": copy.deepcopy(tags),
        }
        return volume_id


class FakeCloud:
    def __init__(self):
        self.regions: Dict[str, FakeEC2] = {}
        self.lock = threading.Lock()

    def region(self, name: str) -> FakeEC2:
        with self.lock:
            if name not in self.regions:
                self.regions[name] = FakeEC2(name)
            return self.regions[name]


@pytest.fixture
def cloud(monkeypatch) -> FakeCloud:
    fake = FakeCloud()
    monkeypatch.setattr(AwsClient, "build", lambda self, region_id=None: fake.region(region_id))
    return fake


@pytest.fixture
def aws() -> AwsClient:
    return AwsClient.new()


@pytest.fixture
def env() -> EnvironmentId:
    return EnvironmentId(commit="0123456789abcdef", origin="git@example.com:ops/fleet", name="test")


@pytest.fixture
def fast_config() -> ReconcileConfig:
    return ReconcileConfig(poll_interval=0.01, wait_timeout=5, image_poll_interval=0.01, image_wait_timeout=5)


def make_fleet(hosts, volumes=(), regions=("eu-west-1",)) -> FleetConfig:
    return FleetConfig(
        environment={"commit": "0123456789abcdef", "origin": "git@example.com:ops/fleet", "name": "test",
                     "authorized_keys": ["ssh-ed25519 AAAAC3Nza test@example"]},
        amis={"ubuntu-x86_64": {region: AMI for region in regions}},
        hosts=[{"instance_type": "t3.micro", "osarch": "ubuntu-x86_64", "region": regions[0], **h} for h in hosts],
        volumes=[{"region": regions[0], **v} for v in volumes],
    )
