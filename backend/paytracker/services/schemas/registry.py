"""Identity registry data transfer objects."""

from dataclasses import dataclass


@dataclass(frozen=True)
class Provider:
    namehash: str
    display_name: str
    provider_id: str
    wallet_address: str
