from enum import Enum


class Strategy(str, Enum):
    EDGE = "edge"
    CLOUD_MANAGED = "cloud-managed"


CLOUD_MANAGED_PREFIXES = ("e2-", "n2-", "a2-")
EDGE_PREFIXES = ("t3.", "t2.", "t4g.")
CLOUD_MANAGED_SERVER_ID = "default-google-cloud-server"
DEFAULT_INSTANCE_TYPE = "t3.medium"

SERVER_NAMES = {
    "default-cloud-server": "Cloudflare Workers",
    "default-cloudflare-server": "Cloudflare Workers",
    CLOUD_MANAGED_SERVER_ID: "Google Cloud Platform",
}

SERVICE_CATALOG = {
    Strategy.EDGE.value: {
        "name": "Cloudflare Workers",
        "baseUrl": "https://workers.cloudflare.com",
        "capabilities": ["serverless", "edge", "global"],
        "maxVMs": 10,
        "pricing": "Free tier available",
    },
    Strategy.CLOUD_MANAGED.value: {
        "name": "Google Cloud Platform",
        "baseUrl": "https://compute.googleapis.com/compute/v1",
        "capabilities": ["docker", "persistent", "high-performance"],
        "maxVMs": 5,
        "pricing": "Pay-as-you-go",
    },
}


def select_strategy(instance_type: str | None, server_id: str | None = None) -> Strategy:
    normalized = (instance_type or "").strip().lower()
    if normalized.startswith(CLOUD_MANAGED_PREFIXES):
        return Strategy.CLOUD_MANAGED
    if normalized.startswith(EDGE_PREFIXES):
        return Strategy.EDGE
    if server_id == CLOUD_MANAGED_SERVER_ID:
        return Strategy.CLOUD_MANAGED
    return Strategy.EDGE


def server_name(server_id: str | None) -> str:
    return SERVER_NAMES.get(server_id or "", "Unknown Server")
