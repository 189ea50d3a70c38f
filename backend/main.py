import asyncio
import html
import json
import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, HTTPException, Query, Request, Response, WebSocket, WebSocketDisconnect
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse

import ai_service
import database
from auth import IdentityProvider, bearer_token, close_identity, get_current_user, get_identity, init_identity
from config import DEFAULT_ALLOWED_ORIGINS, load_config
from database import TaskStore, close_store, get_store, init_store
from errors import CommandCenterError, ConfigError, InvalidInputError
from models import (
    ApiKeyPayload,
    ApiKeyStatus,
    ParseRequest,
    ParseResponse,
    SignInRequest,
    SignInResponse,
    Task,
    TaskCategory,
    TaskCreate,
    TaskFilter,
    TaskOrder,
    TaskUpdate,
    User,
)
from task_sync import TaskListSync

load_dotenv()

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
WS_SESSION_ENDED = 4401

CONFIG_ERROR_PAGE = """<!doctype html>
<html>
<head><title>Configuration error</title></head>
<body style="font-family: sans-serif; display: flex; align-items: center; justify-content: center; height: 100vh; margin: 0;">
  <div style="max-width: 40rem; text-align: center;">
    <h1>Dad's Command Center can't start</h1>
    <p>{detail}</p>
    <p>Fix the server configuration and restart the application.</p>
  </div>
</body>
</html>"""


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    try:
        config = load_config()
    except ConfigError as e:
        logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)
        logger.error("Configuration error: %s", e)
        app.state.config_error = str(e)
        yield
        return

    logging.basicConfig(level=config.log_level, format=LOG_FORMAT)
    app.state.config_error = None
    app.state.config = config
    app.root_path = config.base_path

    database.init_db(config.database_path)
    store = init_store(config.database_path)
    init_identity(store, config.google_client_id)
    logger.info("Command center ready (base path %r)", config.base_path or "/")
    yield
    # Shutdown
    close_identity()
    close_store()


app = FastAPI(lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in os.getenv("ALLOWED_ORIGINS", DEFAULT_ALLOWED_ORIGINS).split(",") if o.strip()],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def configuration_guard(request: Request, call_next):
    """Answer everything with the configuration-error screen when startup config was bad."""
    error = getattr(request.app.state, "config_error", None)
    if error:
        if "text/html" in request.headers.get("accept", ""):
            return HTMLResponse(CONFIG_ERROR_PAGE.format(detail=html.escape(error)), status_code=503)
        return JSONResponse(status_code=503, content={"detail": error, "error": ConfigError.code})
    return await call_next(request)


@app.exception_handler(CommandCenterError)
async def command_center_error_handler(_request: Request, exc: CommandCenterError):
    if exc.status_code >= 500:
        logger.error("%s: %s", type(exc).__name__, exc)
    else:
        logger.info("%s: %s", type(exc).__name__, exc)
    return JSONResponse(status_code=exc.status_code, content={"detail": str(exc), "error": exc.code})


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


# Auth

@app.post("/auth/sign-in")
def sign_in(body: SignInRequest, identity: IdentityProvider = Depends(get_identity)) -> SignInResponse:
    token, user = identity.sign_in(body.id_token)
    return SignInResponse(token=token, user=user)


@app.post("/auth/sign-out")
def sign_out(token: str = Depends(bearer_token), identity: IdentityProvider = Depends(get_identity)) -> dict:
    identity.sign_out(token)
    return {"status": "signed_out"}


@app.get("/auth/me")
def me(user: User = Depends(get_current_user)) -> User:
    return user


# Tasks

@app.get("/tasks")
def get_tasks(
    category: TaskCategory = TaskCategory.ALL,
    task_filter: TaskFilter = Query(default=TaskFilter.ALL, alias="filter"),
    user: User = Depends(get_current_user),
    store: TaskStore = Depends(get_store),
) -> list[Task]:
    return store.list_tasks(user.id, category, task_filter)


@app.post("/tasks", response_model=Task, status_code=201)
def create_task(
    task_data: TaskCreate,
    user: User = Depends(get_current_user),
    store: TaskStore = Depends(get_store),
):
    # A blank title is the form submitted with nothing in it
    if not task_data.title.strip():
        return Response(status_code=204)
    return store.create_task(
        user.id,
        task_data.compose_text(),
        task_data.category,
        task_data.priority,
        task_data.due_date
    )


@app.patch("/tasks/{task_id}")
def update_task(
    task_id: str,
    task_data: TaskUpdate,
    user: User = Depends(get_current_user),
    store: TaskStore = Depends(get_store),
) -> Task:
    updates = {
        field: value
        for field, value in task_data.model_dump(exclude_unset=True).items()
        if value is not None or field == "due_date"  # null due_date clears it
    }
    if "text" in updates:
        text = updates.pop("text").strip()
        # Saving an emptied inline edit cancels it
        if text:
            updates["text"] = text
    return store.update_task(user.id, task_id, **updates)


@app.delete("/tasks/{task_id}")
def delete_task(
    task_id: str,
    confirm: bool = False,
    user: User = Depends(get_current_user),
    store: TaskStore = Depends(get_store),
) -> dict:
    if not confirm:
        raise HTTPException(
            status_code=409,
            detail="Deleting a task is permanent. Repeat the request with confirm=true."
        )
    store.delete_task(user.id, task_id)
    return {"status": "deleted"}


@app.put("/tasks/order")
def save_task_order(
    order: TaskOrder,
    user: User = Depends(get_current_user),
    store: TaskStore = Depends(get_store),
) -> dict:
    store.reorder_tasks(user.id, order.task_ids)
    return {"status": "reordered", "count": len(order.task_ids)}


# Settings

@app.get("/settings/api-key")
def get_api_key_status(user: User = Depends(get_current_user), store: TaskStore = Depends(get_store)) -> ApiKeyStatus:
    api_key = store.get_api_key(user.id)
    if not api_key:
        return ApiKeyStatus(is_set=False)
    return ApiKeyStatus(is_set=True, last_four=api_key[-4:] if len(api_key) > 4 else api_key)


@app.put("/settings/api-key")
def save_api_key(
    payload: ApiKeyPayload,
    user: User = Depends(get_current_user),
    store: TaskStore = Depends(get_store),
) -> ApiKeyStatus:
    api_key = payload.api_key.strip()
    if not api_key:
        raise InvalidInputError("API key cannot be empty.")
    store.save_api_key(user.id, api_key)
    logger.info("API key saved for user %s", user.id)
    return ApiKeyStatus(is_set=True, last_four=api_key[-4:] if len(api_key) > 4 else api_key)


@app.delete("/settings/api-key")
def delete_api_key(
    confirm: bool = False,
    user: User = Depends(get_current_user),
    store: TaskStore = Depends(get_store),
) -> ApiKeyStatus:
    if not confirm:
        raise HTTPException(
            status_code=409,
            detail="Deleting your API key cannot be undone. Repeat the request with confirm=true."
        )
    store.delete_api_key(user.id)
    logger.info("API key deleted for user %s", user.id)
    return ApiKeyStatus(is_set=False)


# AI

@app.post("/ai/parse")
async def parse_task(
    body: ParseRequest,
    request: Request,
    user: User = Depends(get_current_user),
    store: TaskStore = Depends(get_store),
) -> ParseResponse:
    """Extract task form fields from a natural-language request."""
    natural_language_input = body.input.strip()
    if not natural_language_input:
        raise InvalidInputError("Describe the task you want to add.")

    parsed = await ai_service.parse_task_with_ai(
        store.get_api_key(user.id),
        natural_language_input,
        model=request.app.state.config.anthropic_model
    )
    return ParseResponse(parsed=parsed, suggested_text=ai_service.suggest_task_text(parsed))


# Live task list

def _handle_stream_message(sync: TaskListSync, user: User, raw: str):
    """Apply one client message from the task stream."""
    try:
        message = json.loads(raw)
        kind = message.get("type")
        if kind == "subscribe":
            sync.subscribe(
                user.id,
                TaskCategory(message.get("category", TaskCategory.ALL.value)),
                TaskFilter(message.get("filter", TaskFilter.ALL.value))
            )
            return
        if kind == "reorder":
            old_index, new_index = int(message["old_index"]), int(message["new_index"])
        else:
            raise InvalidInputError(f"Unknown message type: {kind!r}")
    except (AttributeError, KeyError, TypeError, ValueError) as e:
        raise InvalidInputError(f"Malformed task stream message: {e}") from e
    sync.reorder(old_index, new_index)


@app.websocket("/ws/tasks")
async def task_stream(
    websocket: WebSocket,
    token: str = "",
    category: TaskCategory = TaskCategory.ALL,
    task_filter: TaskFilter = Query(default=TaskFilter.ALL, alias="filter"),
):
    """
    Push the user's task list on every change and accept reorder/subscribe messages.
    Closes with 4401 when the session signs out.
    """
    if getattr(websocket.app.state, "config_error", None):
        await websocket.close(code=1011)
        return
    identity = get_identity()
    user = await run_in_threadpool(identity.current_user, token)
    if user is None:
        await websocket.close(code=WS_SESSION_ENDED)
        return
    await websocket.accept()

    loop = asyncio.get_running_loop()
    outbox: asyncio.Queue = asyncio.Queue()
    session_ended = object()

    def push(message):
        # Store pushes arrive from worker threads
        loop.call_soon_threadsafe(outbox.put_nowait, message)

    def on_tasks(tasks: list[Task]):
        push({"type": "snapshot", "tasks": [task.model_dump(mode="json") for task in tasks]})

    def on_auth(current: User | None):
        if current is None:
            push(session_ended)

    sync = TaskListSync(get_store(), on_change=on_tasks)
    stop_auth = await run_in_threadpool(identity.on_auth_state_changed, token, on_auth)

    async def send_loop():
        while True:
            message = await outbox.get()
            if message is session_ended:
                await websocket.close(code=WS_SESSION_ENDED)
                return
            await websocket.send_json(message)

    async def receive_loop():
        while True:
            raw = await websocket.receive_text()
            try:
                await run_in_threadpool(_handle_stream_message, sync, user, raw)
            except CommandCenterError as e:
                logger.warning("Task stream action failed for user %s: %s", user.id, e)
                push({"type": "error", "error": e.code, "detail": str(e)})

    sender = receiver = None
    try:
        await run_in_threadpool(sync.subscribe, user.id, category, task_filter)
        sender = asyncio.create_task(send_loop())
        receiver = asyncio.create_task(receive_loop())
        # Whichever side finishes first ends the stream
        done, _pending = await asyncio.wait({sender, receiver}, return_when=asyncio.FIRST_COMPLETED)
        for finished in done:
            error = finished.exception()
            if isinstance(error, WebSocketDisconnect):
                logger.debug("Task stream closed for user %s", user.id)
            elif error is not None:
                logger.error("Task stream for user %s failed: %s", user.id, error)
                raise error
    finally:
        for running in (sender, receiver):
            if running is not None:
                running.cancel()
        sync.unsubscribe()
        stop_auth()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
