"""
Sous Chef Backend - FastAPI Application
Main entry point: wires the conversation service, recipe store and
Spoonacular client to one chat transport (Slack or web socket)
"""

import asyncio
import contextlib
import json

from fastapi import FastAPI, HTTPException, Request, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from config import (
    CORS_ORIGINS,
    DB_PATH,
    CONVERSATION_WORKSPACE_ID,
    SLACK_BOT_TOKEN,
    SLACK_SIGNING_SECRET,
    SESSION_IDLE_TIMEOUT,
    SESSION_SWEEP_INTERVAL,
    PORT,
)
from souschef.conversation import TurnDispatcher
from souschef.errors import StoreError
from souschef.logger import get_logger
from souschef.nlu import WatsonAssistant
from souschef.session import SessionManager
from souschef.spoonacular import SpoonacularClient
from souschef.store import SQLiteRecipeStore
from souschef.transports import SlackTransport, WebSocketTransport

logger = get_logger("souschef")

VERSION = "1.0.0"


# Collaborators, created once per process
store = SQLiteRecipeStore(DB_PATH)
sessions = SessionManager(idle_timeout=SESSION_IDLE_TIMEOUT)
dispatcher = TurnDispatcher(
    sessions=sessions,
    gateway=WatsonAssistant(),
    store=store,
    recipe_client=SpoonacularClient(),
    workspace_id=CONVERSATION_WORKSPACE_ID,
)


async def on_message(message, transport) -> None:
    await dispatcher.process_message(message, transport)


# Slack when a bot token is configured, otherwise the web socket
if SLACK_BOT_TOKEN:
    transport = SlackTransport(on_message, bot_token=SLACK_BOT_TOKEN, signing_secret=SLACK_SIGNING_SECRET)
else:
    transport = WebSocketTransport(on_message)


async def sweep_sessions(interval: float) -> None:
    """Evict idle sessions forever"""
    while True:
        await asyncio.sleep(interval)
        sessions.evict_idle()


@contextlib.asynccontextmanager
async def lifespan(app: FastAPI):
    try:
        await store.init()
    except StoreError as e:
        logger.error(f"Recipe store initialization failed: {e}")
        raise SystemExit(1)
    logger.info(f"sous-chef is connected and running! (transport: {transport.name})")

    sweeper = None
    if SESSION_IDLE_TIMEOUT and SESSION_SWEEP_INTERVAL:
        sweeper = asyncio.create_task(sweep_sessions(SESSION_SWEEP_INTERVAL))
    yield
    if sweeper:
        sweeper.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await sweeper
    if isinstance(transport, SlackTransport):
        await transport.drain()
    await store.close()


# Initialize FastAPI app
app = FastAPI(
    title="Sous Chef API",
    description="Recipe chat bot backed by Watson Assistant and Spoonacular",
    version=VERSION,
    lifespan=lifespan,
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class HealthResponse(BaseModel):
    status: str
    transport: str
    active_sessions: int


# API Endpoints
@app.get("/")
async def root():
    """Root endpoint"""
    return {"message": "Sous Chef is running", "version": VERSION, "transport": transport.name}


@app.get("/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint"""
    return HealthResponse(status="healthy", transport=transport.name, active_sessions=len(sessions))


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    if not isinstance(transport, WebSocketTransport):
        await websocket.close(code=1008)
        return
    await transport.serve(websocket)


@app.post("/slack/events")
async def slack_events(request: Request):
    """Slack Events API receiver"""
    if not isinstance(transport, SlackTransport):
        raise HTTPException(status_code=404, detail="Slack transport is not enabled")

    body = await request.body()
    if not transport.verify_signature(
        request.headers.get("X-Slack-Request-Timestamp", ""),
        body,
        request.headers.get("X-Slack-Signature", ""),
    ):
        raise HTTPException(status_code=401, detail="Invalid Slack signature")

    # Slack re-sends events it thinks were missed; the first delivery is already being handled
    if request.headers.get("X-Slack-Retry-Num"):
        return {"ok": True}

    try:
        payload = json.loads(body)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON body")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Invalid JSON body")

    answer = transport.handle_event(payload)
    return answer if answer is not None else {"ok": True}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=PORT)
