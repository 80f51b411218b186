import httpx

from vm_gateway.clients.http import build_client, request_checked


def agent_url(base_url: str, path: str) -> str:
    return f"{base_url.rstrip('/')}{path}"


class AgentClient:
    """Talks to per-VM upstream agents; the base URL comes from each record."""

    def __init__(self, timeout: float, client: httpx.Client | None = None):
        self.client = client or build_client(timeout)

    def restart_browser(self, base_url: str) -> None:
        request_checked(self.client, "POST", agent_url(base_url, "/browser/restart"))

    def run(self, base_url: str, payload: dict) -> dict:
        response = request_checked(
            self.client, "POST", agent_url(base_url, "/run"), json=payload
        )
        if not response.content:
            return {}
        return response.json()

    def forward(
        self, base_url: str, path: str, method: str, content: bytes | None = None
    ) -> httpx.Response:
        # Upstream status codes are passed through untouched, so no raise here.
        return self.client.request(
            method,
            agent_url(base_url, path),
            content=content,
            headers={"Content-Type": "application/json"},
        )

    def close(self) -> None:
        self.client.close()
