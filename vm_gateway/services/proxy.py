import json
import logging
from dataclasses import dataclass

import httpx

from vm_gateway.clients.agent import AgentClient, agent_url
from vm_gateway.errors import NoUpstreamAgentError, UnsupportedActionError, VMNotFoundError
from vm_gateway.metrics import metrics
from vm_gateway.repositories import VMStore


logger = logging.getLogger(__name__)

ACTION_PATHS = {
    "browser/navigate": "/browser/navigate",
    "restart": "/browser/restart",
    "status": "/health",
    "execute": "/run",
    "screenshot": "/run",
}
BODYLESS_METHODS = {"GET", "HEAD"}
DEFAULT_CONTENT_TYPE = "application/json"


@dataclass
class ProxiedResponse:
    status_code: int
    content: bytes
    content_type: str


class ActionProxy:
    """Forwards enumerated control actions to a VM's upstream agent.

    One attempt per call. Transport failures are reported as 502 rather than
    retried.
    """

    def __init__(self, store: VMStore, agent: AgentClient):
        self.store = store
        self.agent = agent

    @staticmethod
    def upstream_path(action: str) -> str:
        path = ACTION_PATHS.get(action.strip("/"))
        if path is None:
            raise UnsupportedActionError(action)
        return path

    def proxy(
        self, vm_id: str, action: str, method: str, body: bytes | None = None
    ) -> ProxiedResponse:
        record = self.store.get(vm_id)
        if record is None:
            raise VMNotFoundError(vm_id)
        path = self.upstream_path(action)
        upstream = record.upstream_agent_url
        if not upstream:
            raise NoUpstreamAgentError(record.id)

        method = method.upper()
        content = None if method in BODYLESS_METHODS else (body or b"")
        target = agent_url(upstream, path)
        metrics.inc("proxy_requests_total")
        try:
            response = self.agent.forward(upstream, path, method, content)
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            metrics.inc("proxy_upstream_errors_total")
            logger.warning(
                "upstream agent call failed vm_id=%s url=%s error=%s",
                record.id,
                target,
                exc,
            )
            return ProxiedResponse(
                status_code=502,
                content=json.dumps(
                    {"error": "Upstream agent unreachable", "message": str(exc)}
                ).encode("utf-8"),
                content_type=DEFAULT_CONTENT_TYPE,
            )
        logger.debug(
            "proxied action=%s vm_id=%s status=%s", action, record.id, response.status_code
        )
        return ProxiedResponse(
            status_code=response.status_code,
            content=response.content,
            content_type=response.headers.get("content-type") or DEFAULT_CONTENT_TYPE,
        )
