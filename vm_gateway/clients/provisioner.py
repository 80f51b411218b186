import httpx

from vm_gateway.clients.http import build_client, request_checked


class ProvisionerClient:
    """Client for the external container provisioning endpoint."""

    def __init__(
        self, base_url: str, timeout: float, client: httpx.Client | None = None
    ):
        self.base_url = base_url.rstrip("/")
        self.client = client or build_client(timeout, base_url=self.base_url)

    def create_container(self, payload: dict) -> dict:
        response = request_checked(
            self.client, "POST", f"{self.base_url}/containers", json=payload
        )
        return response.json()

    def close(self) -> None:
        self.client.close()
