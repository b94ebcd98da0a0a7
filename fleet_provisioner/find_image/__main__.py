"""Find the newest image matching a name pattern in every enabled region."""
# pyright: reportTypedDictNotRequiredAccess=false

import argparse
import threading
from typing import Dict, List, Optional, Tuple

from botocore.exceptions import BotoCoreError, ClientError
from dotenv import load_dotenv
from loguru import logger

from mypy_boto3_ec2.type_defs import ImageTypeDef

from ..aws_provider.client_factory import AwsClient
from ..aws_provider.image import find_images
from ..reconcile.multiplex import Channel, multiplex, produce


def newest_image(images: List[ImageTypeDef]) -> Optional[ImageTypeDef]:
    if not images:
        return None
    # CreationDate is ISO 8601, lexical order is chronological
    return max(images, key=lambda image: image.get('CreationDate', ''))


def _search_region(aws: AwsClient, region: str, owner: str, name: str, arch: str, cancel: threading.Event) -> Channel[Tuple[str, Optional[str]]]:
    def _work(ch: Channel[Tuple[str, Optional[str]]]):
        with logger.contextualize(region=region):
            try:
                images = find_images(aws.build(region), owner, name, arch)
            except (ClientError, BotoCoreError) as exc:
                logger.error(f"Cannot search images: {exc}")
                return
            image = newest_image(images)
            logger.debug(f"{len(images)} image(s) matching {name}")
        ch.send((region, image['ImageId'] if image else None))

    return produce(cancel, _work, name=f"find-image-{region}")


def find_newest_images(aws: AwsClient, regions: List[str], owner: str, name: str, arch: str,
                       cancel: Optional[threading.Event] = None) -> Dict[str, str]:
    cancel = cancel or threading.Event()
    channels = [_search_region(aws, region, owner, name, arch, cancel) for region in regions]

    result: Dict[str, str] = {}
    for region, image_id in multiplex(cancel, *channels):
        if image_id is None:
            logger.warning(f"No image matching {name} in region {region}")
        else:
            result[region] = image_id
    return result


def make_parser():
    parser = argparse.ArgumentParser(description="Find the newest matching image per region")
    parser.add_argument("--owner", type=str, required=True, help="Image owner account id or alias")
    parser.add_argument("--name", type=str, required=True, help="Image name, wildcards allowed")
    parser.add_argument("--arch", type=str, default="x86_64", help="Image architecture")
    parser.add_argument("-p", "--profile", type=str, default=None, help="AWS profile to use")
    return parser


if __name__ == "__main__":
    parser = make_parser()
    args = parser.parse_args()

    load_dotenv()

    from utils.logger import configure_logger
    configure_logger()

    aws = AwsClient.new(args.profile)
    regions = aws.get_enabled_regions()
    logger.info(f"Searching {len(regions)} regions for {args.name} ({args.arch})")

    for region, image_id in sorted(find_newest_images(aws, regions, args.owner, args.name, args.arch).items()):
        print(f"{region}: {image_id}")
