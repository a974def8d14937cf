import asyncio
import json
import logging

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import StreamingResponse

from homeio_agent.auth import require_agent_token
from homeio_agent.broadcast import StateBroadcastHub, get_hub
from homeio_agent.catalog import get_store
from homeio_agent.deploy_ops import DeployOrchestrator, deploy_guard
from homeio_agent.errors import DeployInFlightError
from homeio_agent.logging_setup import setup_logging
from homeio_agent.models import ConvertRunRequest, ConvertRunResult, DeployRequest, DeployResult
from homeio_agent.run_convert import convert_run_command_to_compose

setup_logging("homeio-agent")
log = logging.getLogger(__name__)

app = FastAPI(title="homeio-deploy-agent")

SSE_KEEPALIVE_SECONDS = 15.0


def get_orchestrator() -> DeployOrchestrator:
    return DeployOrchestrator()


@app.get("/internal/health")
def health():
    return {"ok": True}


@app.on_event("startup")
async def on_startup():
    try:
        await asyncio.to_thread(get_store().ensure_indexes)
    except Exception as e:
        log.warning("store init failed: %s", e)
    get_hub().start()


@app.on_event("shutdown")
async def on_shutdown():
    await get_hub().stop()


@app.post("/agent/apps/deploy", dependencies=[Depends(require_agent_token)], response_model=DeployResult)
async def deploy(req: DeployRequest, orchestrator: DeployOrchestrator = Depends(get_orchestrator)):
    try:
        with deploy_guard(req.appId):
            return await orchestrator.deploy(req)
    except DeployInFlightError as e:
        raise HTTPException(status_code=409, detail=e.message) from e


@app.post("/agent/apps/convert-run", dependencies=[Depends(require_agent_token)], response_model=ConvertRunResult)
def convert_run(req: ConvertRunRequest):
    return convert_run_command_to_compose(req.command)


@app.get("/agent/system/state", dependencies=[Depends(require_agent_token)])
def system_state(hub: StateBroadcastHub = Depends(get_hub)):
    return hub.snapshot()


@app.post("/agent/system/refresh", dependencies=[Depends(require_agent_token)])
async def system_refresh(hub: StateBroadcastHub = Depends(get_hub)):
    return {"refreshed": await hub.trigger_refresh()}


async def sse_events(request: Request, hub: StateBroadcastHub, keepalive: float = SSE_KEEPALIVE_SECONDS):
    q = hub.subscribe()
    try:
        while not await request.is_disconnected():
            try:
                message = await asyncio.wait_for(q.get(), timeout=keepalive)
            except asyncio.TimeoutError:
                yield ": keepalive\n\n"
                continue
            yield f"data: {json.dumps(message, default=str)}\n\n"
    finally:
        hub.unsubscribe(q)


@app.get("/agent/system/stream", dependencies=[Depends(require_agent_token)])
async def system_stream(request: Request, hub: StateBroadcastHub = Depends(get_hub)):
    return StreamingResponse(
        sse_events(request, hub),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
