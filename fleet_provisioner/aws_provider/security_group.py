# pyright: reportTypedDictNotRequiredAccess=false

from typing import List, Sequence, Tuple

from mypy_boto3_ec2.client import EC2Client
from mypy_boto3_ec2.type_defs import FilterTypeDef, IpPermissionTypeDef, TagTypeDef

GROUP_DESCRIPTION = "created by fleet-provisioner"


def find_security_group_ids(client: EC2Client, filters: Sequence[FilterTypeDef]) -> List[str]:
    result = []
    paginator = client.get_paginator('describe_security_groups')
    for page in paginator.paginate(Filters=list(filters)):
        result.extend(sg['GroupId'] for sg in page.get('SecurityGroups', []))
    return result


def create_security_group(client: EC2Client, vpc_id: str, group_name: str, tags: List[TagTypeDef]) -> str:
    response = client.create_security_group(
        GroupName=group_name,
        Description=GROUP_DESCRIPTION,
        VpcId=vpc_id,
        TagSpecifications=[{'ResourceType': 'security-group', 'Tags': tags}],
    )
    security_group_id = response['GroupId']
    assert type(security_group_id) is str
    return security_group_id


def tcp_ingress(port_ranges: Sequence[Tuple[int, int]]) -> List[IpPermissionTypeDef]:
    return [
        {
            'IpProtocol': 'tcp',
            'FromPort': from_port,
            'ToPort': to_port,
            'IpRanges': [{'CidrIp': '0.0.0.0/0'}],
        }
        for from_port, to_port in port_ranges
    ]


def self_ingress(security_group_id: str, vpc_id: str) -> List[IpPermissionTypeDef]:
    return [{
        'IpProtocol': '-1',
        'UserIdGroupPairs': [{'GroupId': security_group_id, 'VpcId': vpc_id}],
    }]


def authorize_ingress(client: EC2Client, security_group_id: str, permissions: List[IpPermissionTypeDef]):
    client.authorize_security_group_ingress(GroupId=security_group_id, IpPermissions=permissions)


def revoke_ingress(client: EC2Client, security_group_id: str, permissions: List[IpPermissionTypeDef]):
    client.revoke_security_group_ingress(GroupId=security_group_id, IpPermissions=permissions)


def delete_security_group(client: EC2Client, security_group_id: str):
    client.delete_security_group(GroupId=security_group_id)
