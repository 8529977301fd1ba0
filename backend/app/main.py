import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import (
    Depends,
    FastAPI,
    File,
    Form,
    Header,
    HTTPException,
    Query,
    Request,
    UploadFile,
    WebSocket,
    WebSocketDisconnect,
)
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .db import Settings, create_document_store, settings
from .errors import QuizError
from .game import CommandResult, GameController
from .models import Role, SessionSnapshot
from .schemas import (
    AnswerIn,
    AnswerOut,
    CommandOut,
    ConnectIn,
    ConnectOut,
    CreateQuestionIn,
    ErrorOut,
    JoinIn,
    LeaderboardOut,
    PlayerOut,
    QuestionIn,
    QuestionOut,
    ReorderQuestionsIn,
)
from .storage import QuestionImageStore
from .transport import ConnectionRegistry, UnknownConnection

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def get_controller(request: Request) -> GameController:
    return request.app.state.controller


def get_connections(request: Request) -> ConnectionRegistry:
    return request.app.state.connections


def require_admin(request: Request, x_admin_key: Optional[str] = Header(default=None)):
    if x_admin_key != request.app.state.settings.ADMIN_KEY:
        raise HTTPException(status_code=401, detail="Invalid admin key")


def command_out(result: CommandResult) -> CommandOut:
    return CommandOut(warnings=result.warnings, session=result.snapshot)


def create_app(
    config: Settings = settings,
    controller: Optional[GameController] = None,
    image_store: Optional[QuestionImageStore] = None,
) -> FastAPI:
    controller = controller or GameController.from_settings(config, create_document_store(config))
    image_store = image_store or QuestionImageStore(
        config.AZURE_STORAGE_CONNECTION_STRING, config.AZURE_STORAGE_CONTAINER
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await controller.load()
        logger.info("Quiz session %s ready", controller.store.session_id)
        yield
        await controller.close()
        logger.info("Quiz session %s shutting down", controller.store.session_id)

    app = FastAPI(title="QuizLive API", lifespan=lifespan)
    app.state.settings = config
    app.state.controller = controller
    app.state.connections = ConnectionRegistry(controller)
    app.state.image_store = image_store

    origins = [o.strip() for o in config.CORS_ORIGINS.split(",") if o.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins or ["*"],
        allow_origin_regex=config.CORS_ORIGIN_REGEX or None,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(QuizError)
    async def quiz_error_handler(request: Request, exc: QuizError):
        body = ErrorOut(error=exc.code, detail=exc.detail, warnings=exc.warnings)
        return JSONResponse(status_code=exc.status_code, content=body.model_dump())

    @app.exception_handler(UnknownConnection)
    async def unknown_connection_handler(request: Request, exc: UnknownConnection):
        body = ErrorOut(error="connection_closed", detail="Connect again to resume")
        return JSONResponse(status_code=410, content=body.model_dump())

    # public

    @app.get("/api/session", response_model=SessionSnapshot)
    async def get_session(
        role: Role = Role.SCREEN,
        player_id: Optional[str] = None,
        ctl: GameController = Depends(get_controller),
    ):
        if role == Role.ADMIN:
            raise HTTPException(status_code=403, detail="Use /api/admin/session")
        return ctl.snapshot(role, player_id)

    @app.get("/api/leaderboard", response_model=LeaderboardOut)
    async def leaderboard(limit: Optional[int] = Query(default=None, ge=1), ctl: GameController = Depends(get_controller)):
        return LeaderboardOut(leaderboard=ctl.leaderboard(limit or config.LEADERBOARD_TOP_N))

    @app.post("/api/join", response_model=PlayerOut)
    async def join(payload: JoinIn, ctl: GameController = Depends(get_controller)):
        return PlayerOut(player=await ctl.join(payload.display_name))

    @app.post("/api/answer", response_model=AnswerOut)
    async def answer(payload: AnswerIn, ctl: GameController = Depends(get_controller)):
        record = await ctl.submit_answer(
            payload.player_id, payload.question_id, payload.text, display_name=payload.display_name
        )
        return AnswerOut(question_id=record.question_id, submitted_text=record.submitted_text)

    # long-polling transport

    @app.post("/api/connections", response_model=ConnectOut)
    async def connect(
        payload: ConnectIn,
        request: Request,
        x_admin_key: Optional[str] = Header(default=None),
        connections: ConnectionRegistry = Depends(get_connections),
    ):
        if payload.role == Role.ADMIN:
            require_admin(request, x_admin_key)
        return ConnectOut(handle=connections.accept_connection(payload.role, payload.player_id))

    @app.get("/api/connections/{handle}/events")
    async def poll_events(
        handle: str,
        timeout: Optional[float] = Query(default=None, ge=0),
        connections: ConnectionRegistry = Depends(get_connections),
    ):
        wait = config.POLL_TIMEOUT_SEC if timeout is None else min(timeout, config.POLL_TIMEOUT_SEC)
        events = await connections.poll(handle, wait)
        return {"events": [e.model_dump(mode="json") for e in events]}

    @app.delete("/api/connections/{handle}")
    async def disconnect(handle: str, connections: ConnectionRegistry = Depends(get_connections)):
        connections.close(handle)
        return {"ok": True}

    @app.websocket("/ws/{role}")
    async def stream(websocket: WebSocket, role: Role, player_id: Optional[str] = None, key: Optional[str] = None):
        ctl: GameController = websocket.app.state.controller
        if role == Role.ADMIN and key != config.ADMIN_KEY:
            await websocket.close(code=4401, reason="Invalid admin key")
            return

        await websocket.accept()
        sub = ctl.subscribe(role, player_id)

        async def pump():
            async for event in sub:
                await websocket.send_json(event.model_dump(mode="json"))

        async def drain_client():
            while True:
                await websocket.receive_text()

        sender = asyncio.create_task(pump())
        receiver = asyncio.create_task(drain_client())
        try:
            done, _ = await asyncio.wait({sender, receiver}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            sender.cancel()
            receiver.cancel()
            ctl.unsubscribe(sub)

        for task in done:
            exc = task.exception()
            if exc is not None and not isinstance(exc, WebSocketDisconnect):
                logger.warning("%s stream ended with error: %s", role.value, exc)
        if sender in done and sender.exception() is None:
            # buffer overflow: the client must reconnect for a fresh snapshot
            await websocket.close(code=1013, reason="Subscriber fell behind")

    # admin

    @app.get("/api/admin/verify")
    async def verify(_: None = Depends(require_admin)):
        return {"ok": True}

    @app.get("/api/admin/session", response_model=SessionSnapshot)
    async def admin_session(_: None = Depends(require_admin), ctl: GameController = Depends(get_controller)):
        return ctl.snapshot(Role.ADMIN)

    @app.get("/api/admin/questions")
    async def list_questions(_: None = Depends(require_admin), ctl: GameController = Depends(get_controller)):
        return {"questions": [q.model_dump() for q in ctl.store.questions]}

    @app.post("/api/admin/questions", response_model=QuestionOut)
    async def create_question(
        payload: CreateQuestionIn,
        _: None = Depends(require_admin),
        ctl: GameController = Depends(get_controller),
    ):
        result = await ctl.create_question(
            payload.text, payload.accepted_answers, payload.image_ref, payload.points, question_id=payload.id
        )
        return QuestionOut(warnings=result.warnings, session=result.snapshot, question=result.value)

    @app.put("/api/admin/questions/{question_id}", response_model=QuestionOut)
    async def replace_question(
        question_id: str,
        payload: QuestionIn,
        _: None = Depends(require_admin),
        ctl: GameController = Depends(get_controller),
    ):
        result = await ctl.replace_question(
            question_id, payload.text, payload.accepted_answers, payload.image_ref, payload.points
        )
        return QuestionOut(warnings=result.warnings, session=result.snapshot, question=result.value)

    @app.delete("/api/admin/questions/{question_id}", response_model=CommandOut)
    async def delete_question(question_id: str, _: None = Depends(require_admin), ctl: GameController = Depends(get_controller)):
        return command_out(await ctl.delete_question(question_id))

    @app.post("/api/admin/questions/order", response_model=CommandOut)
    async def reorder_questions(
        payload: ReorderQuestionsIn,
        _: None = Depends(require_admin),
        ctl: GameController = Depends(get_controller),
    ):
        return command_out(await ctl.reorder_questions(payload.question_ids))

    @app.post("/api/admin/question-image")
    async def upload_question_image(
        request: Request,
        question_id: str = Form(...),
        file: UploadFile = File(...),
        _: None = Depends(require_admin),
    ):
        store: QuestionImageStore = request.app.state.image_store
        if not store.configured:
            raise HTTPException(status_code=500, detail="Image storage is not configured")

        data = await file.read()
        try:
            url = await store.upload(question_id, file.filename or "image", data, file.content_type)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {"url": url}

    @app.post("/api/admin/start-next", response_model=CommandOut)
    async def start_next(_: None = Depends(require_admin), ctl: GameController = Depends(get_controller)):
        return command_out(await ctl.start_next())

    @app.post("/api/admin/lock", response_model=CommandOut)
    async def lock(_: None = Depends(require_admin), ctl: GameController = Depends(get_controller)):
        return command_out(await ctl.lock())

    @app.post("/api/admin/reveal", response_model=CommandOut)
    async def reveal(_: None = Depends(require_admin), ctl: GameController = Depends(get_controller)):
        return command_out(await ctl.reveal())

    @app.post("/api/admin/reset", response_model=CommandOut)
    async def reset(_: None = Depends(require_admin), ctl: GameController = Depends(get_controller)):
        return command_out(await ctl.reset())

    @app.post("/api/admin/players/{player_id}/kick", response_model=CommandOut)
    async def kick_player(player_id: str, _: None = Depends(require_admin), ctl: GameController = Depends(get_controller)):
        return command_out(await ctl.kick_player(player_id))

    @app.post("/api/admin/players/{player_id}/alias", response_model=CommandOut)
    async def alias_player(player_id: str, _: None = Depends(require_admin), ctl: GameController = Depends(get_controller)):
        return command_out(await ctl.alias_player(player_id))

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
