from dataclasses import dataclass


@dataclass
class ReconcileConfig:
    # fixed poll interval of the instance state waiter, no backoff
    poll_interval: float = 0.5
    wait_timeout: float = 600

    image_poll_interval: float = 15
    image_wait_timeout: float = 3600

    max_regions: int = 20
    max_hosts_per_region: int = 16
