from dataclasses import dataclass


@dataclass(frozen=True)
class TracerConfig:
    node_url: str = "https://mainnet.fuel.network"
    # Base asset of the chain; only funds in this asset are followed.
    base_asset_id: str = "0xf8f8b6283d7fa5b672b530cbb84fcccb4ff8dc40f8176ef4544ddb1f1952ad07"
    # Outputs and receipts must be strictly above this to be tracked (base units).
    threshold: int = 1_000_000_000_000
    page_size: int = 60
    request_timeout: float = 30.0
    # Reference behaviour aborts on the first failed fetch.
    fetch_retries: int = 0
    retry_backoff: float = 2.0


CONFIG = TracerConfig()
