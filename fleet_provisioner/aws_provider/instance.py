# pyright: reportTypedDictNotRequiredAccess=false

from typing import List, Optional, Sequence

from mypy_boto3_ec2.client import EC2Client
from mypy_boto3_ec2.type_defs import FilterTypeDef, InstanceTypeDef, TagTypeDef


def describe_live_instances(client: EC2Client, filters: Sequence[FilterTypeDef]) -> List[InstanceTypeDef]:
    instances: List[InstanceTypeDef] = []
    paginator = client.get_paginator('describe_instances')
    for page in paginator.paginate(Filters=list(filters)):
        for reservation in page.get('Reservations', []):
            for instance in reservation.get('Instances', []):
                # terminated instances linger in the listing until AWS purges them
                if instance['State']['Name'] == 'terminated':
                    continue
                instances.append(instance)
    return instances


def associate_address(client: EC2Client, instance_id: str, public_ip: str):
    client.associate_address(InstanceId=instance_id, PublicIp=public_ip)


def run_instance(
    client: EC2Client,
    *,
    image_id: str,
    instance_type: str,
    root_device_name: str,
    root_size: int,
    security_group_ids: List[str],
    tags: List[TagTypeDef],
    user_data: str,
    availability_zone: Optional[str] = None,
) -> InstanceTypeDef:
    kwargs = dict()
    if availability_zone:
        kwargs['Placement'] = {'AvailabilityZone': availability_zone}

    response = client.run_instances(
        ImageId=image_id,
        InstanceType=instance_type, # pyright: ignore[reportArgumentType]
        MinCount=1,
        MaxCount=1,
        SecurityGroupIds=security_group_ids,
        BlockDeviceMappings=[{
            'DeviceName': root_device_name,
            'Ebs': {
                'VolumeSize': root_size,
                'DeleteOnTermination': True,
            }
        }],
        TagSpecifications=[
            {'ResourceType': 'instance', 'Tags': tags},
            {'ResourceType': 'volume', 'Tags': tags},
        ],
        # boto3 base64-encodes UserData on the wire
        UserData=user_data,
        **kwargs, # pyright: ignore[reportArgumentType]
    )
    return response['Instances'][0]


def start_instances(client: EC2Client, instance_ids: List[str]):
    client.start_instances(InstanceIds=instance_ids)


def terminate_instances(client: EC2Client, instance_ids: List[str]):
    client.terminate_instances(InstanceIds=instance_ids)


def delete_tags(client: EC2Client, resource_ids: List[str], tags: List[TagTypeDef]):
    client.delete_tags(Resources=resource_ids, Tags=tags)
