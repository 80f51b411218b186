import html
import json
from datetime import UTC, datetime
from functools import lru_cache

from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import HTMLResponse
from starlette.concurrency import run_in_threadpool

from vm_gateway.clients.agent import AgentClient
from vm_gateway.config import get_settings
from vm_gateway.db import SessionLocal
from vm_gateway.metrics import metrics
from vm_gateway.models import VMRecord
from vm_gateway.repositories import InMemoryVMStore, SqlVMStore, VMStore
from vm_gateway.schemas import (
    ActionResponse,
    CreateVMRequest,
    CreateVMResponse,
    DeleteVMResponse,
    RecordMetricRequest,
    RunScriptRequest,
)
from vm_gateway.services.backends import build_provisioner
from vm_gateway.services.lifecycle import VMLifecycleManager
from vm_gateway.services.proxy import ACTION_PATHS, ActionProxy
from vm_gateway.strategy import SERVICE_CATALOG


router = APIRouter()

PLATFORM_CAPABILITIES = [
    "real-vm-deployment",
    "docker-integration",
    "multi-cloud-support",
    "auto-scaling",
    "load-balancing",
]
AGENT_CAPABILITIES = [
    "browser_automation",
    "puppeteer_control",
    "screenshot_capture",
    "script_execution",
    "navigation_control",
]
BROWSER_USER_AGENT = (
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/{version} Safari/537.36"
)


@lru_cache(maxsize=1)
def get_store() -> VMStore:
    settings = get_settings()
    if settings.store_backend == "sql":
        return SqlVMStore(SessionLocal)
    return InMemoryVMStore()


@lru_cache(maxsize=1)
def get_agent_client() -> AgentClient:
    return AgentClient(timeout=get_settings().upstream_timeout_sec)


@lru_cache(maxsize=1)
def get_manager() -> VMLifecycleManager:
    return VMLifecycleManager(
        get_store(), build_provisioner(get_settings()), agent=get_agent_client()
    )


@lru_cache(maxsize=1)
def get_proxy() -> ActionProxy:
    return ActionProxy(get_store(), get_agent_client())


def close_clients() -> None:
    """Close cached outbound clients; the next request rebuilds them."""
    if get_manager.cache_info().currsize:
        get_manager().provisioner.close()
    if get_agent_client.cache_info().currsize:
        get_agent_client().close()
    get_proxy.cache_clear()
    get_manager.cache_clear()
    get_agent_client.cache_clear()


def _agent_descriptor(record: VMRecord) -> dict:
    base = f"/vms/{record.id}/agent"
    chrome_version = record.chrome_version or get_settings().chrome_version
    return {
        "vmId": record.id,
        "status": record.status,
        "capabilities": AGENT_CAPABILITIES,
        "endpoints": {
            "navigate": f"{base}/browser/navigate",
            "restart": f"{base}/restart",
            "screenshot": f"{base}/screenshot",
            "execute": f"{base}/execute",
            "status": f"{base}/status",
        },
        "actions": sorted(ACTION_PATHS),
        "upstream": bool(record.upstream_agent_url),
        "browser": {
            "version": chrome_version,
            "userAgent": BROWSER_USER_AGENT.format(version=chrome_version),
            "viewport": {"width": 1280, "height": 720},
        },
        "system": {
            "memory": record.memory or "512MB",
            "cpu": record.cpu or "0.5 vCPU",
            "storage": record.storage or "1GB",
            "os": "Linux x86_64",
        },
    }


def _render_desktop(record: VMRecord) -> str:
    esc = html.escape
    info = json.dumps(
        {
            "id": record.id,
            "containerId": record.container_id or "N/A",
            "provider": record.created_via or "edge",
        }
    ).replace("<", "\\u003c")
    return f"""<!doctype html>
<html lang=\"en\">
  <head>
    <meta charset=\"utf-8\" />
    <meta name=\"viewport\" content=\"width=device-width, initial-scale=1\" />
    <title>Chrome VM - {esc(record.name)}</title>
    <style>
      body {{ margin: 0; background: #000; font-family: Arial, sans-serif; }}
      .vm-info {{ background: #1a1a1a; padding: 10px; color: #ccc; font-size: 12px; }}
      .status {{ background: #2d5a27; color: #90ee90; padding: 3px 8px; border-radius: 3px; }}
      #desktop {{ display: block; margin: 0 auto; }}
    </style>
  </head>
  <body>
    <div class=\"vm-info\">
      <strong>Chrome VM:</strong> {esc(record.name)} |
      <strong>Status:</strong> <span class=\"status\">{esc(record.status.upper())}</span> |
      <strong>Provider:</strong> {esc(record.created_via or "edge")} |
      <strong>Chrome:</strong> {esc(record.chrome_version or "120.0.0.0")} |
      <strong>Memory:</strong> {esc(record.memory or "512MB")} |
      <strong>CPU:</strong> {esc(record.cpu or "0.5 vCPU")} |
      <strong>Address:</strong> {esc(record.public_address or "edge-ip")}
    </div>
    <canvas id=\"desktop\" width=\"1280\" height=\"720\"></canvas>
    <script id=\"vm-info\" type=\"application/json\">{info}</script>
    <script>
      const vm = JSON.parse(document.getElementById("vm-info").textContent);
      const ctx = document.getElementById("desktop").getContext("2d");
      function draw() {{
        ctx.fillStyle = "#f0f0f0";
        ctx.fillRect(0, 0, 1280, 720);
        ctx.fillStyle = "#ffffff";
        ctx.fillRect(220, 10, 800, 25);
        ctx.fillStyle = "#666";
        ctx.font = "11px Arial";
        ctx.fillText("https://accounts.google.com/signin", 225, 27);
        ctx.fillStyle = "#4285f4";
        ctx.font = "bold 24px Arial";
        ctx.fillText("Google", 50, 100);
        ctx.fillStyle = "#666";
        ctx.font = "10px Arial";
        ctx.fillText("VM ID: " + vm.id, 50, 250);
        ctx.fillText("Container: " + vm.containerId, 50, 265);
        ctx.fillText("Provider: " + vm.provider, 50, 280);
      }}
      draw();
      setInterval(() => {{
        ctx.fillStyle = "#f0f0f0";
        ctx.fillRect(1100, 10, 170, 20);
        ctx.fillStyle = "#666";
        ctx.fillText("Last update: " + new Date().toLocaleTimeString(), 1105, 22);
      }}, 1000);
    </script>
  </body>
</html>"""


# Registration order is dispatch order: collection routes, then VM
# sub-resources, and the generic /vms/{vm_id} routes last.


@router.get("/health")
def health() -> dict:
    settings = get_settings()
    return {
        "status": "healthy",
        "timestamp": datetime.now(UTC).isoformat(),
        "service": settings.service_name,
        "version": settings.service_version,
        "capabilities": ["real-vm-deployment", "docker-integration", "multi-cloud"],
        "metrics": metrics.snapshot(),
    }


@router.get("/vms")
def list_vms(manager: VMLifecycleManager = Depends(get_manager)) -> dict:
    vms = [record.to_wire() for record in manager.list()]
    return {"vms": vms, "total": len(vms), "services": SERVICE_CATALOG}


@router.post("/vms", status_code=201, response_model=CreateVMResponse)
def create_vm(
    req: CreateVMRequest | None = None,
    manager: VMLifecycleManager = Depends(get_manager),
) -> CreateVMResponse:
    req = req or CreateVMRequest()
    record = manager.create(
        req.name,
        instance_type=req.instance_type,
        server_id=req.server_id,
        requested_id=req.vm_id,
    )
    return CreateVMResponse(
        message="VM creation started",
        vmId=record.id,
        status=record.status,
        estimatedTime="2-5 minutes",
        error=record.error,
    )


@router.get("/services")
def list_services() -> dict:
    return {
        "services": SERVICE_CATALOG,
        "total": len(SERVICE_CATALOG),
        "capabilities": PLATFORM_CAPABILITIES,
    }


@router.get("/vms/{vm_id}/novnc", response_class=HTMLResponse)
def vm_desktop(
    vm_id: str, manager: VMLifecycleManager = Depends(get_manager)
) -> HTMLResponse:
    record = manager.find(vm_id) or manager.placeholder(vm_id)
    return HTMLResponse(
        content=_render_desktop(record), headers={"Cache-Control": "no-cache"}
    )


@router.get("/vms/{vm_id}/agent")
def vm_agent(vm_id: str, manager: VMLifecycleManager = Depends(get_manager)) -> dict:
    return _agent_descriptor(manager.get(vm_id))


@router.api_route("/vms/{vm_id}/agent/{action:path}", methods=["GET", "POST"])
async def vm_agent_action(
    vm_id: str,
    action: str,
    request: Request,
    proxy: ActionProxy = Depends(get_proxy),
) -> Response:
    body = await request.body()
    proxied = await run_in_threadpool(proxy.proxy, vm_id, action, request.method, body)
    return Response(
        content=proxied.content,
        status_code=proxied.status_code,
        media_type=proxied.content_type,
    )


@router.post("/vms/{vm_id}/start", response_model=ActionResponse)
def start_vm(
    vm_id: str, manager: VMLifecycleManager = Depends(get_manager)
) -> ActionResponse:
    record = manager.start(vm_id)
    return ActionResponse(success=True, message=f"VM {record.id} started.")


@router.post("/vms/{vm_id}/restart", response_model=ActionResponse)
def restart_vm(
    vm_id: str, manager: VMLifecycleManager = Depends(get_manager)
) -> ActionResponse:
    record = manager.restart(vm_id)
    return ActionResponse(success=True, message=f"VM {record.id} restart initiated.")


@router.post("/vms/{vm_id}/stop", response_model=ActionResponse)
def stop_vm(
    vm_id: str, manager: VMLifecycleManager = Depends(get_manager)
) -> ActionResponse:
    record = manager.stop(vm_id)
    return ActionResponse(success=True, message=f"VM {record.id} stopped.")


@router.get("/vms/{vm_id}/status")
def vm_status(vm_id: str, manager: VMLifecycleManager = Depends(get_manager)) -> dict:
    record = manager.get(vm_id)
    return {
        "vmId": record.id,
        "status": record.status,
        "lastActivity": record.to_wire()["lastActivity"],
        "error": record.error,
    }


@router.get("/vms/{vm_id}/scripts")
def list_scripts(
    vm_id: str, manager: VMLifecycleManager = Depends(get_manager)
) -> dict:
    scripts = [script.to_wire() for script in manager.list_scripts(vm_id)]
    return {"scripts": scripts, "total": len(scripts)}


@router.post("/vms/{vm_id}/scripts", status_code=201)
def run_script(
    vm_id: str,
    req: RunScriptRequest,
    manager: VMLifecycleManager = Depends(get_manager),
) -> dict:
    return manager.run_script(vm_id, req.script_name, req.script_content).to_wire()


@router.get("/vms/{vm_id}/metrics")
def list_metrics(
    vm_id: str, manager: VMLifecycleManager = Depends(get_manager)
) -> dict:
    samples = [sample.to_wire() for sample in manager.list_metrics(vm_id)]
    return {"metrics": samples, "total": len(samples)}


@router.post("/vms/{vm_id}/metrics", status_code=201)
def record_metric(
    vm_id: str,
    req: RecordMetricRequest,
    manager: VMLifecycleManager = Depends(get_manager),
) -> dict:
    return manager.record_metric(vm_id, req.metric_type, req.value, req.unit).to_wire()


@router.get("/vms/{vm_id}/events")
def list_events(vm_id: str, manager: VMLifecycleManager = Depends(get_manager)) -> dict:
    events = [event.to_wire() for event in manager.list_events(vm_id)]
    return {"events": events, "total": len(events)}


@router.get("/vms/{vm_id}")
def get_vm(vm_id: str, manager: VMLifecycleManager = Depends(get_manager)) -> dict:
    return manager.get(vm_id).to_wire()


@router.delete("/vms/{vm_id}", response_model=DeleteVMResponse)
def delete_vm(
    vm_id: str, manager: VMLifecycleManager = Depends(get_manager)
) -> DeleteVMResponse:
    record = manager.delete(vm_id)
    return DeleteVMResponse(message="VM deleted successfully", vmId=record.id)
