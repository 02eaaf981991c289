"""
Network-class detection and the per-class timing profile.
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from shared.config import SyncSettings
from shared.errors import ConfigurationError

MOBILE_USER_AGENT = re.compile(
    r"Android|webOS|iPhone|iPad|iPod|BlackBerry|IEMobile|Opera Mini",
    re.IGNORECASE,
)


class NetworkClass(str, Enum):
    """Client network classes with different timing budgets."""
    DESKTOP = "desktop"
    LOW_BANDWIDTH = "low_bandwidth"


def detect_network_class(user_agent: Optional[str]) -> NetworkClass:
    """Classify a client from its user agent; mobile agents are low-bandwidth."""
    if user_agent and MOBILE_USER_AGENT.search(user_agent):
        return NetworkClass.LOW_BANDWIDTH
    return NetworkClass.DESKTOP


@dataclass(frozen=True)
class NetworkProfile:
    """Timeouts, retry budget and delays for one network class."""
    network_class: NetworkClass
    fetch_timeout: float
    permissions_timeout: float
    approval_timeout: float
    realtime_max_attempts: int
    realtime_setup_delay: float
    realtime_retry_setup_delay: float
    realtime_retry_delay: float
    realtime_max_delay: float
    realtime_backoff_jitter: bool

    @property
    def is_low_bandwidth(self) -> bool:
        return self.network_class == NetworkClass.LOW_BANDWIDTH

    @classmethod
    def from_settings(
        cls,
        settings: SyncSettings,
        network_class: Optional[NetworkClass] = None,
    ) -> "NetworkProfile":
        if network_class is None:
            network_class = resolve_network_class(settings)

        low = network_class == NetworkClass.LOW_BANDWIDTH
        return cls(
            network_class=network_class,
            fetch_timeout=settings.fetch_timeout_low_bandwidth if low else settings.fetch_timeout_desktop,
            permissions_timeout=(
                settings.permissions_timeout_low_bandwidth if low else settings.permissions_timeout_desktop
            ),
            approval_timeout=settings.approval_timeout_low_bandwidth if low else settings.approval_timeout_desktop,
            realtime_max_attempts=(
                settings.realtime_max_attempts_low_bandwidth if low else settings.realtime_max_attempts_desktop
            ),
            realtime_setup_delay=(
                settings.realtime_setup_delay_low_bandwidth if low else settings.realtime_setup_delay_desktop
            ),
            realtime_retry_setup_delay=settings.realtime_retry_setup_delay,
            realtime_retry_delay=(
                settings.realtime_retry_delay_low_bandwidth if low else settings.realtime_retry_delay_desktop
            ),
            realtime_max_delay=settings.realtime_max_delay,
            realtime_backoff_jitter=settings.realtime_backoff_jitter,
        )


def resolve_network_class(settings: SyncSettings) -> NetworkClass:
    """Network class from settings, detecting it from the user agent on "auto"."""
    configured = settings.network_class.lower()
    if configured == "auto":
        return detect_network_class(settings.user_agent)
    try:
        return NetworkClass(configured)
    except ValueError:
        raise ConfigurationError(
            f"Unknown network class: {settings.network_class}",
            details={"allowed": ["auto"] + [c.value for c in NetworkClass]}
        )
