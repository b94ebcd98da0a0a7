from typing import Iterable, Optional


class ProvisionError(Exception):
    """Failure of a remote operation, annotated with the region and host it concerns."""

    def __init__(self, message: str, *, region: Optional[str] = None, host: Optional[str] = None):
        self.region = region
        self.host = host
        self.reason = message
        super().__init__(self._format(message))

    def _format(self, message: str) -> str:
        context = []
        if self.region:
            context.append(f"region {self.region}")
        if self.host:
            context.append(f"host {self.host}")
        if context:
            return f"[{', '.join(context)}] {message}"
        return message


class ZoneConflictError(ProvisionError):
    def __init__(self, volume: str, volume_zone: str, host_zone: str, *, region: Optional[str] = None, host: Optional[str] = None):
        self.volume = volume
        self.volume_zone = volume_zone
        self.host_zone = host_zone
        super().__init__(
            f"attached volume {volume} exists in zone {volume_zone}, but instance must be created in zone {host_zone}",
            region=region, host=host)


class WaitTimeoutError(ProvisionError):
    def __init__(self, region: str, names: Iterable[str], target: str, reason: str = "timed out"):
        self.names = sorted(names)
        self.target = target
        super().__init__(f"{reason} while waiting for {self.names} to reach state {target}", region=region)


class UnknownInstanceStateError(RuntimeError):
    pass


class ConfigError(ValueError):
    pass
