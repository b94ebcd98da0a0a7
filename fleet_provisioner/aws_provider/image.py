# pyright: reportTypedDictNotRequiredAccess=false

from typing import Dict, List, Sequence

from mypy_boto3_ec2.client import EC2Client
from mypy_boto3_ec2.type_defs import ImageTypeDef, TagTypeDef


def get_root_device_names(client: EC2Client, image_ids: Sequence[str]) -> Dict[str, str]:
    if not image_ids:
        return dict()
    # unknown ids are absent from the result rather than an error
    response = client.describe_images(Filters=[{'Name': 'image-id', 'Values': list(image_ids)}])
    return {image['ImageId']: image['RootDeviceName'] for image in response['Images'] if 'RootDeviceName' in image}


def get_root_device_name(client: EC2Client, image_id: str) -> str:
    response = client.describe_images(ImageIds=[image_id])
    if not response['Images']:
        raise LookupError(f"image {image_id} not found")
    return response['Images'][0]['RootDeviceName']


def create_image(client: EC2Client, instance_id: str, image_name: str, tags: List[TagTypeDef]) -> str:
    response = client.create_image(
        InstanceId=instance_id,
        Name=image_name,
        NoReboot=True,
        TagSpecifications=[{'ResourceType': 'image', 'Tags': tags}],
    )
    image_id = response['ImageId']
    assert type(image_id) is str
    return image_id


def get_image_state(client: EC2Client, image_id: str) -> str:
    response = client.describe_images(ImageIds=[image_id])
    if not response['Images']:
        return 'pending'
    return response['Images'][0]['State']


def find_images(client: EC2Client, owner: str, image_name: str, architecture: str) -> List[ImageTypeDef]:
    result: List[ImageTypeDef] = []

    next_token = None
    while True:
        kwargs = dict()
        if next_token:
            kwargs['NextToken'] = next_token

        response = client.describe_images(Filters=[
            {'Name': 'name', 'Values': [image_name]},
            {'Name': 'architecture', 'Values': [architecture]},
        ],
            Owners=[owner],
            MaxResults=1000, **kwargs)

        result.extend(response['Images'])

        next_token = response.get('NextToken')
        if not next_token:
            break

    return result
