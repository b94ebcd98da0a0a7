# pyright: reportTypedDictNotRequiredAccess=false

from typing import List

from mypy_boto3_ec2.client import EC2Client
from mypy_boto3_ec2.type_defs import AddressTypeDef


def describe_addresses(client: EC2Client) -> List[AddressTypeDef]:
    return client.describe_addresses()['Addresses']
