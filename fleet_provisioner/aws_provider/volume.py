# pyright: reportTypedDictNotRequiredAccess=false

from typing import List, Sequence

from mypy_boto3_ec2.client import EC2Client
from mypy_boto3_ec2.type_defs import FilterTypeDef, TagTypeDef, VolumeTypeDef


def describe_volumes(client: EC2Client, filters: Sequence[FilterTypeDef]) -> List[VolumeTypeDef]:
    volumes: List[VolumeTypeDef] = []
    paginator = client.get_paginator('describe_volumes')
    for page in paginator.paginate(Filters=list(filters)):
        volumes.extend(page.get('Volumes', []))
    return volumes


def create_volume(client: EC2Client, *, availability_zone: str, size: int, volume_type: str, tags: List[TagTypeDef]) -> str:
    response = client.create_volume(
        AvailabilityZone=availability_zone,
        Size=size,
        VolumeType=volume_type, # pyright: ignore[reportArgumentType]
        TagSpecifications=[{'ResourceType': 'volume', 'Tags': tags}],
    )
    volume_id = response['VolumeId']
    assert type(volume_id) is str
    return volume_id


def attach_volume(client: EC2Client, volume_id: str, instance_id: str, device: str) -> str:
    response = client.attach_volume(Device=device, InstanceId=instance_id, VolumeId=volume_id)
    return response.get('Device', device)


def delete_volume(client: EC2Client, volume_id: str):
    client.delete_volume(VolumeId=volume_id)
