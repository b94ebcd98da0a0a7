# pyright: reportTypedDictNotRequiredAccess=false

from loguru import logger

from mypy_boto3_ec2.client import EC2Client


def ensure_default_vpc(client: EC2Client) -> str:
    response = client.describe_vpcs(Filters=[{'Name': 'isDefault', 'Values': ['true']}])
    if response['Vpcs']:
        vpc_id = response['Vpcs'][0]['VpcId']
    else:
        logger.info("No default VPC, creating one")
        vpc_id = client.create_default_vpc()['Vpc']['VpcId']
        logger.success(f"Created default VPC {vpc_id}")

    assert type(vpc_id) is str
    return vpc_id
