from dataclasses import dataclass
from typing import List, Optional

import boto3

from mypy_boto3_ec2.client import EC2Client


@dataclass
class AwsClient:
    profile_name: Optional[str] = None

    @classmethod
    def new(cls, profile_name: Optional[str] = None) -> 'AwsClient':
        return AwsClient(profile_name=profile_name)

    def build(self, region_id: Optional[str] = None) -> EC2Client:
        # one session per client, boto3's default session is not thread safe
        session = boto3.session.Session(profile_name=self.profile_name, region_name=region_id)
        return session.client('ec2')

    def get_enabled_regions(self) -> List[str]:
        client = self.build()
        response = client.describe_regions(AllRegions=False)
        return sorted(region['RegionName'] for region in response['Regions'] if 'RegionName' in region)
