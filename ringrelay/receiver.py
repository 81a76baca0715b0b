"""FastAPI webhook receiver relaying Omi transcripts into RingCentral."""

import json
import logging
import secrets
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse
from pydantic import BaseModel

from ringrelay.accumulator import SegmentAccumulator
from ringrelay.action_dispatcher import ActionDispatcher, SUCCESS, is_outcome
from ringrelay.config import load_config
from ringrelay.extractor import Extractor, LLMExtractor
from ringrelay.idle_monitor import IdleCommitMonitor
from ringrelay.notifier import DeviceNotifier
from ringrelay.ringcentral import ActionSink, RingCentralSink
from ringrelay.session_store import MODES, SessionStore

logger = logging.getLogger(__name__)

SERVICE_NAME = "ringrelay"
VERSION = "0.1.0"


class SendMessageRequest(BaseModel):
    naturalLanguageText: str = ""
    uid: str | None = None


class StatusResponse(BaseModel):
    sessions: dict[str, int]
    monitor_running: bool
    uptime_seconds: float


def _parse_segments(payload) -> list:
    """Omi posts either a bare segment array or {"segments": [...], "session_id": ...}."""
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict):
        return payload.get("segments") or []
    return []


def _check_webhook_auth(request: Request, secret: str) -> str | None:
    """Validate webhook auth via Authorization header OR ?token= query param.
    Returns None if OK, or an error reason string if rejected."""
    if not secret:
        return None
    if request.headers.get("Authorization", "") == f"Bearer {secret}":
        return None
    if request.query_params.get("token", "") == secret:
        return None
    return "invalid_webhook_auth"


def create_app(config: dict = None, store: SessionStore = None, extractor: Extractor = None,
               sink: ActionSink = None, notifier: DeviceNotifier = None) -> FastAPI:
    """Wire the pipeline and return the FastAPI app.

    Collaborators default to the real implementations built from config;
    tests pass fakes.
    """
    config = config or load_config()
    session_cfg = config.get("session", {})
    rc_cfg = config.get("ringcentral", {})
    llm_cfg = config.get("llm", {})
    omi_cfg = config.get("omi", {})

    if store is None:
        store = SessionStore(config.get("storage", {}).get("db_path"))
    if sink is None:
        sink = RingCentralSink(
            server_url=rc_cfg.get("server_url") or "https://platform.ringcentral.com",
            client_id=rc_cfg.get("client_id", ""),
            client_secret=rc_cfg.get("client_secret", ""),
            redirect_uri=rc_cfg.get("redirect_uri", ""),
            on_tokens=lambda uid, tokens: store.save_user(uid, tokens),
        )
    if extractor is None:
        extractor = LLMExtractor(api_key=llm_cfg.get("api_key") or None,
                                 model=llm_cfg.get("model") or "gpt-4o",
                                 base_url=llm_cfg.get("base_url") or None)
    if notifier is None:
        notifier = DeviceNotifier(app_id=omi_cfg.get("app_id", ""),
                                  app_secret=omi_cfg.get("app_secret", ""))

    dispatcher = ActionDispatcher(store, extractor, sink)
    accumulator = SegmentAccumulator(
        store, dispatcher,
        max_segments=session_cfg.get("max_segments", 5),
        instant_session_prefix=session_cfg.get("instant_session_prefix", "test_session"),
    )
    monitor = IdleCommitMonitor(
        store, dispatcher, notifier=notifier,
        idle_timeout=session_cfg.get("idle_timeout", 5.0),
        interval=session_cfg.get("monitor_interval", 1.0),
        processing_timeout=session_cfg.get("processing_timeout", 120.0),
    )
    webhook_secret = config.get("webhook_secret", "")
    oauth_states: dict[str, str] = {}
    started_at = time.time()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        recovered = store.recover()
        if recovered:
            logger.warning(f"[WEBHOOK] Reset {recovered} session(s) left processing by a previous run")
        monitor.start()
        yield
        await monitor.stop()

    app = FastAPI(title="RingRelay Omi Webhook", version=VERSION, lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.store = store
    app.state.accumulator = accumulator
    app.state.dispatcher = dispatcher
    app.state.monitor = monitor
    app.state.sink = sink
    app.state.oauth_states = oauth_states

    @app.get("/")
    async def index(uid: str = Query(default="")):
        if not uid:
            return {
                "app": "RingRelay",
                "version": VERSION,
                "status": "active",
                "endpoints": {
                    "auth": "/auth?uid=<user_id>",
                    "webhook": "/webhook?session_id=<session>&uid=<user_id>",
                    "setup_check": "/setup-completed?uid=<user_id>",
                },
            }
        user = store.get_user(uid)
        if not user or not user["tokens"]:
            return {"uid": uid, "authenticated": False, "auth_url": f"/auth?uid={uid}"}
        return {
            "uid": uid,
            "authenticated": True,
            "chats": [c.get("name") or c.get("id") for c in user["available_chats"]],
        }

    @app.get("/health")
    async def health():
        return {"status": "healthy", "service": SERVICE_NAME}

    @app.get("/auth")
    async def auth(uid: str = Query(default="")):
        if not uid:
            return HTMLResponse("Missing uid parameter", status_code=400)
        state = secrets.token_urlsafe(12)
        oauth_states[state] = uid
        return RedirectResponse(sink.authorization_url(state))

    @app.get("/oauth/callback")
    async def oauth_callback(code: str = Query(default=""), state: str = Query(default="")):
        if not code or not state:
            return HTMLResponse("Missing code or state parameter", status_code=400)
        uid = oauth_states.pop(state, None)
        if not uid:
            return HTMLResponse("Invalid state parameter", status_code=400)
        try:
            tokens = await sink.exchange_code(code)
            user = {"uid": uid, "tokens": tokens}
            chats = await sink.fetch_chats(user)
            store.save_user(uid, user["tokens"], chats)
        except Exception as e:
            logger.error(f"[WEBHOOK] OAuth callback failed for {uid[:10]}: {e}", exc_info=True)
            return HTMLResponse(f"Authentication failed: {e}", status_code=500)
        logger.info(f"[WEBHOOK] Authenticated {uid[:10]}... ({len(chats)} chats)")
        return HTMLResponse(
            "<html><body><h1>Connected to RingCentral</h1>"
            f"<p>{len(chats)} chats available. You can close this window.</p></body></html>"
        )

    @app.get("/setup-completed")
    async def setup_completed(uid: str = Query(default="")):
        if not uid:
            return JSONResponse({"error": "Missing uid parameter"}, status_code=400)
        return {"is_setup_completed": store.is_authenticated(uid)}

    @app.post("/refresh-chats")
    async def refresh_chats(uid: str = Query(default="")):
        user = store.get_user(uid) if uid else None
        if not user or not user["tokens"]:
            return {"success": False, "error": "User not authenticated"}
        try:
            chats = await sink.fetch_chats(user)
        except Exception as e:
            logger.error(f"[WEBHOOK] Chat refresh failed for {uid[:10]}: {e}")
            return {"success": False, "error": str(e)}
        store.save_user(uid, user["tokens"], chats)
        return {"success": True, "chats_count": len(chats)}

    @app.post("/logout")
    async def logout(uid: str = Query(default="")):
        user = store.get_user(uid) if uid else None
        if user and user["tokens"]:
            try:
                await sink.revoke(user["tokens"])
            except Exception as e:
                logger.warning(f"[WEBHOOK] Token revoke failed for {uid[:10]}: {e}")
        store.delete_user(uid)
        logger.info(f"[WEBHOOK] Logged out {uid[:10]}...")
        return {"success": True, "message": "Logged out"}

    @app.get("/webhook")
    async def webhook_ready(request: Request):
        """GET handler for Omi webhook validation."""
        return {
            "status": "webhook_ready",
            "message": "Webhook endpoint is active. Use POST to send transcripts.",
            "query_params": dict(request.query_params),
        }

    @app.post("/webhook")
    async def receive_transcript(
        request: Request,
        uid: str = Query(default=""),
        session_id: str = Query(default=""),
    ):
        """Receive real-time transcript segments from Omi.

        Omi sends: POST /webhook?session_id=abc&uid=USER_ID
        Body: JSON array of segments, or {"segments": [...], "session_id": ...}
        """
        auth_error = _check_webhook_auth(request, webhook_secret)
        if auth_error:
            logger.warning(f"[WEBHOOK] Rejected request from uid={uid}: {auth_error}")
            return JSONResponse({"status": "unauthorized"}, status_code=401)

        if not uid:
            return JSONResponse({"message": "User ID required", "setup_required": True},
                                status_code=401)
        if not store.is_authenticated(uid):
            return JSONResponse(
                {"message": "User not authenticated. Please complete setup first.",
                 "setup_required": True},
                status_code=401,
            )

        try:
            raw = await request.body()
            try:
                payload = json.loads(raw) if raw else []
            except json.JSONDecodeError:
                return JSONResponse({"error": "invalid json"}, status_code=400)

            if isinstance(payload, dict) and not session_id:
                session_id = payload.get("session_id") or ""
            sid = session_id or f"omi_session_{uid}"
            segments = _parse_segments(payload)
            logger.info(f"[WEBHOOK] {len(segments)} segment(s) for {sid}")
            if not segments:
                return {"status": "ok"}

            status = await accumulator.process(sid, uid, segments)
            if is_outcome(status):
                return {"message": status, "session_id": sid, "processed_segments": len(segments)}
            logger.debug(f"[WEBHOOK] {sid}: {status}")
            return {"status": "ok"}
        except Exception as e:
            logger.error(f"[WEBHOOK] Error handling batch for uid={uid}: {e}", exc_info=True)
            return JSONResponse({"error": str(e)}, status_code=500)

    @app.get("/api/chats")
    async def api_chats(uid: str = Query(default="")):
        user = store.get_user(uid) if uid else None
        if not user or not user["tokens"]:
            return {"success": False, "error": "Not authenticated"}
        try:
            chats = await sink.fetch_chats(user)
        except Exception as e:
            logger.error(f"[WEBHOOK] /api/chats failed for {uid[:10]}: {e}")
            return {"success": False, "error": str(e)}
        store.save_user(uid, user["tokens"], chats)
        return {"success": True, "chats": chats}

    @app.post("/api/send-message")
    async def api_send_message(body: SendMessageRequest, uid: str = Query(default="")):
        uid = uid or body.uid or ""
        user = store.get_user(uid) if uid else None
        if not user or not user["tokens"]:
            return {"success": False, "error": "Not authenticated"}
        if not body.naturalLanguageText.strip():
            return {"success": False, "error": "No message provided"}
        outcome = await dispatcher.send_natural_language(user, body.naturalLanguageText)
        if outcome.startswith(SUCCESS):
            return {"success": True, "result": outcome}
        return {"success": False, "error": outcome}

    @app.get("/status", response_model=StatusResponse)
    async def status():
        """Session counts by mode."""
        counts = store.count_by_mode()
        return StatusResponse(
            sessions={mode: counts.get(mode, 0) for mode in MODES},
            monitor_running=monitor.running,
            uptime_seconds=round(time.time() - started_at, 1),
        )

    return app
