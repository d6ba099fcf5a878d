# Host.py acts as the Relay host for the plant dashboard
#
# Responsibilities:
# - Relay bus topics to connected dashboards (WebSocket /ws)
# - Replay the latest value per channel to new clients
# - Accept client events: plan selection/purchase (logged) and
#   plant readings (republished on the bus)
# - Provide latest snapshot (GET /latest) and health (GET /health)
# - Hand out the bus connect-flow URL (GET /api/ensync/connect/{plan})
# - Optionally run the telemetry generator in-process

import json
import logging
import urllib.error
import urllib.parse
import urllib.request
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import APIRouter, FastAPI, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from pydantic import ValidationError

import MSG
import Publisher
from Bus import Engine
from Config import Settings, configure_logging, load_settings
from Context import AppContext
from Relay import kind_for_channel

logger = logging.getLogger(__name__)

# ----------------------------
# CONFIG
# ----------------------------
APP_TITLE = "Plant Telemetry Relay"
CONNECT_TIMEOUT_S = 5.0

router = APIRouter()


# ----------------------------
# HELPERS
# ----------------------------
def now_iso() -> str:
    return datetime.now().astimezone().isoformat()


def get_json(url: str, timeout_s: float = CONNECT_TIMEOUT_S) -> tuple[int, Any]:
    # GET a URL and decode its JSON body.
    # Returns (status_code, body), or (0, error_message) on network error.
    req = urllib.request.Request(url=url, headers={"Accept": "application/json"}, method="GET")
    try:
        with urllib.request.urlopen(req, timeout=timeout_s) as resp:
            body = resp.read().decode("utf-8", errors="replace")
            status = resp.getcode()
    except urllib.error.HTTPError as e:
        return e.code, e.read().decode("utf-8", errors="replace")
    except urllib.error.URLError as e:
        return 0, str(e.reason)

    try:
        return status, json.loads(body)
    except json.JSONDecodeError:
        return status, body


def error_frame(detail: str) -> str:
    return json.dumps({"event": "error", "data": {"detail": detail}}, ensure_ascii=False)


async def receive_frame(ws: WebSocket) -> Optional[str]:
    # Text frames pass through; binary frames are decoded as UTF-8.
    # Returns None for a frame that cannot be read as text.
    message = await ws.receive()
    if message["type"] == "websocket.disconnect":
        raise WebSocketDisconnect(message.get("code", 1000))
    if message.get("text") is not None:
        return message["text"]
    data = message.get("bytes")
    if data is None:
        return None
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError:
        return None


async def handle_client_event(ctx: AppContext, ws: WebSocket, raw: str) -> None:
    try:
        msg = MSG.validate_client_event(json.loads(raw))
    except (json.JSONDecodeError, ValidationError) as e:
        await ws.send_text(error_frame(f"Invalid event frame: {e}"))
        return

    try:
        if msg.event == "plan_selected":
            plan = MSG.PlanSelected.model_validate(msg.data)
            logger.info("[WS] plan selected: plan=%s price=%s ts=%s", plan.plan, plan.price, plan.timestamp)
            return
        if msg.event == "plan_purchased":
            plan = MSG.PlanPurchased.model_validate(msg.data)
            logger.info("[WS] plan purchased: plan=%s user=%s ts=%s", plan.plan, plan.user_id, plan.timestamp)
            return

        kind = kind_for_channel(msg.event)
        if kind is None:
            await ws.send_text(error_frame(f"Unsupported event: {msg.event!r}"))
            return

        reading = MSG.READING_MODELS[kind].model_validate(msg.data)
        payload = reading.model_dump()
        if payload.get("timestamp") is None:
            payload["timestamp"] = MSG.now_ms()
        logger.info("[WS] %s from client: %s", msg.event, payload)
        topic = MSG.topic_for(ctx.settings.workspace, kind)
        await Publisher.publish(ctx.publisher, topic, ctx.settings.receivers, payload)
    except ValidationError as e:
        await ws.send_text(error_frame(f"Invalid {msg.event} data: {e.errors()[0]['msg']}"))


# ----------------------------
# ROUTES
# ----------------------------
@router.get("/health")
def health(request: Request) -> Dict[str, Any]:
    ctx: AppContext = request.app.state.ctx
    return {
        "ok": True,
        "service": "relay",
        "time": now_iso(),
        "relay": ctx.relay.state.value,
        "clients": ctx.push_server.client_count(),
    }


@router.get("/latest")
def latest(request: Request) -> JSONResponse:
    ctx: AppContext = request.app.state.ctx
    snap = ctx.push_server.latest()
    if not snap:
        return JSONResponse(status_code=200, content={"ok": False, "detail": "No data received yet"})
    return JSONResponse(status_code=200, content={"ok": True, "channels": snap})


@router.get("/api/ensync/connect/{plan}")
def ensync_connect(plan: str, request: Request, session: str = Query(..., min_length=1)) -> JSONResponse:
    ctx: AppContext = request.app.state.ctx
    plan = plan.lower()
    if plan not in MSG.PLANS:
        return JSONResponse(status_code=400, content={"ok": False, "error": f"Unknown plan {plan!r}"})
    if not ctx.settings.connect_url:
        return JSONResponse(status_code=503, content={"ok": False, "error": "Connect flow not configured"})

    url = f"{ctx.settings.connect_url}/{plan}?" + urllib.parse.urlencode({"session": session})
    status, body = get_json(url)
    if status != 200 or not isinstance(body, dict) or not body.get("url"):
        logger.warning("[HOST] connect flow failed for plan=%s status=%s detail=%s", plan, status, body)
        return JSONResponse(status_code=502, content={"ok": False, "error": "Connect flow unavailable"})

    return JSONResponse(status_code=200, content=MSG.ConnectResponse(url=body["url"]).model_dump())


@router.websocket("/ws")
async def websocket_endpoint(ws: WebSocket):
    ctx: AppContext = ws.app.state.ctx
    await ctx.push_server.connect(ws)
    try:
        # Server pushes updates via the broadcaster; inbound frames are client events
        while True:
            raw = await receive_frame(ws)
            if raw is None:
                await ws.send_text(error_frame("Binary frames must be UTF-8 encoded JSON"))
                continue
            await handle_client_event(ctx, ws, raw)
    except WebSocketDisconnect:
        pass
    finally:
        ctx.push_server.disconnect(ws)


# ----------------------------
# APP
# ----------------------------
def create_app(settings: Optional[Settings] = None, engine: Optional[Any] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        cfg = settings if settings is not None else load_settings()
        ctx = AppContext(cfg, engine=engine if engine is not None else Engine(cfg.engine_url))
        app.state.ctx = ctx
        await ctx.start()
        logger.info("[HOST] started: relay=%s simulator=%s", ctx.relay.state.value, cfg.simulator_enabled)
        try:
            yield
        finally:
            await ctx.stop()
            logger.info("[HOST] stopped")

    app = FastAPI(title=APP_TITLE, lifespan=lifespan)
    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    _settings = load_settings()
    configure_logging(_settings.log_level)
    uvicorn.run(create_app(_settings), host="0.0.0.0", port=4000)
