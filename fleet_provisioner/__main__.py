import argparse
import json
import signal
import sys
import threading

from dotenv import load_dotenv
from loguru import logger

from .aws_provider.client_factory import AwsClient
from .fleet_config import DEFAULT_FLEET_FILE, load_fleet
from .reconcile.driver import bake_images, bring_up, destroy_volumes, status, tear_down
from .reconcile.errors import ConfigError, ProvisionError
from .reconcile.reconcile_config import ReconcileConfig

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2


def confirm(message: str, assume_yes: bool) -> bool:
    if assume_yes:
        return True
    resp = input(f"{message} Proceed? [y/N]: ").strip().lower()
    return resp in ("y", "yes")


def make_parser():
    parser = argparse.ArgumentParser(description="Reconcile a declared EC2 fleet with its live state")
    parser.add_argument("-c", "--config", type=str, default=f"./{DEFAULT_FLEET_FILE}", help="Fleet description file")
    parser.add_argument("-p", "--profile", type=str, default=None, help="AWS profile to use")
    parser.add_argument("--verbose", action="store_true", help="Log at DEBUG level")
    parser.add_argument("--timeout", type=float, default=None, help="Seconds to wait for instance state transitions")

    subparsers = parser.add_subparsers(dest="command", required=True)
    subparsers.add_parser("up", help="Create missing hosts and start stopped ones")

    down = subparsers.add_parser("down", help="Terminate every declared host")
    down.add_argument("-y", "--yes", action="store_true", help="Assume yes to confirmation prompt and proceed")

    subparsers.add_parser("status", help="Print the live state of every declared host")
    subparsers.add_parser("image", help="Create an image from every declared host")

    destroy = subparsers.add_parser("destroy-volumes", help="Delete declared volumes")
    destroy.add_argument("names", nargs="*", help="Volumes to delete, all declared volumes when omitted")
    destroy.add_argument("-y", "--yes", action="store_true", help="Assume yes to confirmation prompt and proceed")
    return parser


def run(args) -> int:
    try:
        fleet = load_fleet(args.config)
    except ConfigError as exc:
        logger.error(f"{exc}")
        return EXIT_CONFIG

    config = ReconcileConfig()
    if args.timeout is not None:
        config.wait_timeout = args.timeout
    aws = AwsClient.new(args.profile)

    cancel = threading.Event()
    signal.signal(signal.SIGINT, lambda *_: cancel.set())

    env = fleet.environment_id()
    logger.info(f"Environment {env.short_name} ({env.colon}), {len(fleet.hosts)} host(s), {len(fleet.volumes)} volume(s)")

    try:
        if args.command == "up":
            result = bring_up(fleet, aws, config, cancel)
            print(json.dumps(result.to_dict(), indent=2))
        elif args.command == "down":
            if not confirm(f"All {len(fleet.hosts)} host(s) of env {env.short_name} will be terminated.", args.yes):
                logger.info("Aborting tear-down due to user cancellation")
                return EXIT_FAILED
            tear_down(fleet, aws, config, cancel)
        elif args.command == "status":
            infos = status(fleet, aws, config, cancel)
            print(json.dumps({name: info.to_dict() for name, info in sorted(infos.items())}, indent=2))
        elif args.command == "image":
            bake_images(fleet, aws, config, cancel)
        elif args.command == "destroy-volumes":
            names = args.names or None
            if not confirm(f"Volumes {args.names or 'all declared'} of env {env.short_name} will be deleted.", args.yes):
                logger.info("Aborting volume deletion due to user cancellation")
                return EXIT_FAILED
            deleted = destroy_volumes(fleet, aws, names, config, cancel)
            print(json.dumps(deleted))
    except ConfigError as exc:
        logger.error(f"{exc}")
        return EXIT_CONFIG
    except ProvisionError as exc:
        logger.error(f"{exc}")
        return EXIT_FAILED

    logger.success(f"{args.command} done")
    return EXIT_OK


if __name__ == "__main__":
    parser = make_parser()
    args = parser.parse_args()

    load_dotenv()

    from utils.logger import configure_logger
    configure_logger("DEBUG" if args.verbose else "INFO")

    sys.exit(run(args))
