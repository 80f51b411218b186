"""Stand-in for the container provisioning endpoint and the browser agent.

Serves both surfaces from one process so the gateway can be exercised end to
end without Docker or a real browser.
"""

import uuid
from datetime import UTC, datetime
from threading import Lock

from fastapi import FastAPI, HTTPException

from fake_upstream.config import get_settings


app = FastAPI(title="Fake Chrome VM Upstream")

_lock = Lock()
_containers: dict[str, dict] = {}
_browser: dict = {"url": "about:blank", "restarts": 0}
_runs: list[dict] = []


def reset_state() -> None:
    with _lock:
        _containers.clear()
        _runs.clear()
        _browser.update({"url": "about:blank", "restarts": 0})


@app.post("/containers")
def create_container(payload: dict) -> dict:
    settings = get_settings()
    if settings.fail_provisioning:
        raise HTTPException(status_code=503, detail="provisioning disabled")
    if not payload.get("name"):
        raise HTTPException(status_code=400, detail="name is required")

    container_id = f"container-{uuid.uuid4().hex[:12]}"
    base = settings.advertise_url.rstrip("/")
    record = {
        "id": container_id,
        "name": payload["name"],
        "image": payload.get("image"),
        "status": "running",
        "agentUrl": base,
        "novncUrl": f"{base}/vnc.html",
        "publicIp": settings.public_ip,
        "ports": payload.get("ports", {}),
        "environment": payload.get("environment", {}),
        "resources": payload.get("resources", {}),
        "createdAt": datetime.now(UTC).isoformat(),
    }
    with _lock:
        _containers[container_id] = record
    return record


@app.get("/containers")
def list_containers() -> list[dict]:
    with _lock:
        return list(_containers.values())


@app.get("/containers/{container_id}")
def get_container(container_id: str) -> dict:
    with _lock:
        row = _containers.get(container_id)
    if not row:
        raise HTTPException(status_code=404, detail="unknown container")
    return row


@app.delete("/containers/{container_id}")
def delete_container(container_id: str) -> dict:
    with _lock:
        existed = _containers.pop(container_id, None) is not None
    return {"id": container_id, "deleted": existed}


@app.get("/health")
def health() -> dict:
    with _lock:
        return {
            "status": "ok",
            "browser": get_settings().browser_version,
            "url": _browser["url"],
            "restarts": _browser["restarts"],
        }


@app.post("/browser/navigate")
def navigate(payload: dict) -> dict:
    url = payload.get("url")
    if not url:
        raise HTTPException(status_code=400, detail="url is required")
    with _lock:
        _browser["url"] = url
    return {"ok": True, "url": url}


@app.post("/browser/restart")
def restart_browser() -> dict:
    with _lock:
        _browser["restarts"] += 1
        restarts = _browser["restarts"]
    return {"ok": True, "restarts": restarts}


@app.post("/run")
def run(payload: dict) -> dict:
    entry = {
        "id": uuid.uuid4().hex,
        "name": payload.get("name"),
        "script": payload.get("script"),
        "action": payload.get("action", "execute"),
        "ranAt": datetime.now(UTC).isoformat(),
    }
    with _lock:
        _runs.append(entry)
    return {"ok": True, "runId": entry["id"], "output": None}
