from fastapi import FastAPI, WebSocket, WebSocketDisconnect, HTTPException, Request, UploadFile, File
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from typing import Any, Callable, Dict, Optional, Set, Tuple
import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime

from examguard.clients.exam_server import ExamServerClient, MonitoringEndpoint
from examguard.config import Settings, settings as default_settings
from examguard.errors import ExamGuardError, PageNotFound, StartRejected
from examguard.models.schemas import (
    FilePickerEventRequest,
    FinalizeResponse,
    FullscreenEventRequest,
    KeyEvent,
    KeydownResponse,
    MobileHandoffRequest,
    MobileHandoffResponse,
    PageResponse,
    SessionResponse,
    SessionState,
    SignalEvent,
    StartSessionRequest,
    SubmitReason,
    SubmitSessionRequest,
    VisibilityEventRequest,
)
from examguard.monitoring.video import StreamOpener, detect_available_cameras, open_video_stream
from examguard.session.controller import SessionController

logger = logging.getLogger(__name__)

# (session, monitoring, artifact, mobile) collaborators for one test
ClientFactory = Callable[[Settings, str], Tuple[Any, Any, Any, Any]]


def http_client_factory(settings: Settings, test_id: str):
    client = ExamServerClient(
        settings.EXAM_SERVER_URL,
        test_id,
        api_token=settings.API_TOKEN,
        timeout=settings.HTTP_TIMEOUT_SECONDS,
    )
    return client, MonitoringEndpoint(client), client, client


class AgentState:
    """Everything the agent holds for the one exam attempt running on this machine."""

    def __init__(self, settings: Settings, client_factory: ClientFactory, stream_opener: StreamOpener):
        self.settings = settings
        self.client_factory = client_factory
        self.stream_opener = stream_opener
        self.controller: Optional[SessionController] = None
        self.collaborators: Tuple[Any, ...] = ()
        self.websocket_connections: Set[WebSocket] = set()
        self.signal_queue: "asyncio.Queue[SignalEvent]" = asyncio.Queue(maxsize=100)
        self.queue_task: Optional[asyncio.Task] = None

    def require_controller(self) -> SessionController:
        if self.controller is None:
            raise HTTPException(status_code=404, detail="No exam session on this agent")
        return self.controller

    def enqueue_signal(self, name: str, payload: Dict[str, Any]) -> None:
        event = SignalEvent(
            name=name,
            payload=payload,
            timestamp=datetime.now(),
            session_id=self.controller.session.session_id if self.controller else None,
        )
        try:
            self.signal_queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning(f"Signal queue is full, dropping {name}")

    async def close(self) -> None:
        if self.controller is not None:
            await self.controller.dispose()
            self.controller = None
        for collaborator in {id(c): c for c in self.collaborators}.values():
            aclose = getattr(collaborator, "aclose", None)
            if aclose is not None:
                try:
                    await aclose()
                except Exception as e:
                    logger.warning(f"Error closing exam server client: {e}")
        self.collaborators = ()
        if self.queue_task is not None:
            self.queue_task.cancel()
            self.queue_task = None


async def process_signal_queue(agent: AgentState):
    """Forward session signals to every connected websocket."""
    while True:
        event = await agent.signal_queue.get()
        if not agent.websocket_connections:
            logger.debug(f"No WebSocket connections, signal not sent: {event.name}")
            continue

        event_payload = event.model_dump(mode="json")
        disconnected = set()
        for websocket in list(agent.websocket_connections):
            try:
                await websocket.send_json(event_payload)
            except Exception as e:
                logger.error(f"Error sending signal to WebSocket: {e}")
                disconnected.add(websocket)
        agent.websocket_connections -= disconnected


def page_response(page) -> PageResponse:
    return PageResponse(
        id=page.id,
        content_type=page.content_type,
        order_index=page.order_index,
        is_captured=page.is_captured,
        size=len(page.source),
    )


def session_response(controller: SessionController, message: Optional[str] = None) -> SessionResponse:
    return SessionResponse(
        session=controller.session,
        remaining_seconds=controller.remaining_seconds(),
        camera_owner=controller.camera_owner,
        mobile_status=controller.mobile.status,
        pages=[page_response(p) for p in controller.pipeline.pages],
        result_ref=controller.result_ref,
        message=message,
    )


def create_app(
    settings: Settings = default_settings,
    client_factory: ClientFactory = http_client_factory,
    stream_opener: StreamOpener = open_video_stream,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.agent = AgentState(settings, client_factory, stream_opener)
        yield
        # release the camera and stop every timer
        await app.state.agent.close()

    app = FastAPI(title="ExamGuard Proctoring Agent", version="1.0.0", lifespan=lifespan)

    # The exam page runs in a local browser shell
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def get_agent(request: Request) -> AgentState:
        return request.app.state.agent

    @app.exception_handler(ExamGuardError)
    async def exam_guard_error_handler(request: Request, exc: ExamGuardError):
        if isinstance(exc, StartRejected):
            status_code = 412
        elif isinstance(exc, PageNotFound):
            status_code = 404
        elif exc.retryable:
            status_code = 503
        else:
            status_code = 409
        return JSONResponse(
            status_code=status_code,
            content={"error": exc.__class__.__name__, "message": exc.message, "retryable": exc.retryable},
        )

    @app.post("/session/start", response_model=SessionResponse)
    async def start_session(body: StartSessionRequest, request: Request):
        """Start the proctored attempt."""
        agent = get_agent(request)
        current = agent.controller
        if current is not None:
            state = current.session.state
            if state not in (SessionState.NOT_STARTED, SessionState.SUBMITTED):
                raise HTTPException(status_code=409, detail="An exam session is already running")
            if state == SessionState.SUBMITTED or current.exam != body.test:
                await agent.close()

        if agent.controller is None:
            collaborators = agent.client_factory(agent.settings, body.test.test_id)
            agent.collaborators = collaborators
            session_api, monitoring_api, artifact_api, mobile_api = collaborators
            agent.controller = SessionController(
                body.test,
                session_api,
                monitoring_api,
                artifact_api,
                mobile_api,
                settings=agent.settings,
                stream_opener=agent.stream_opener,
                student_id=body.student_id,
                session_id=body.session_id,
            )
            agent.controller.signals.connect_all(agent.enqueue_signal)
        agent.controller.report_fullscreen(body.is_fullscreen)

        if agent.queue_task is None or agent.queue_task.done():
            agent.queue_task = asyncio.create_task(process_signal_queue(agent))

        await agent.controller.start()
        return session_response(agent.controller, "Test started successfully")

    @app.get("/session", response_model=SessionResponse)
    async def get_session(request: Request):
        return session_response(get_agent(request).require_controller())

    # ============== Browser-boundary events ==============

    @app.post("/session/events/visibility")
    async def visibility_event(body: VisibilityEventRequest, request: Request):
        controller = get_agent(request).require_controller()
        return {"recorded": controller.on_visibility_change(body.hidden)}

    @app.post("/session/events/fullscreen")
    async def fullscreen_event(body: FullscreenEventRequest, request: Request):
        controller = get_agent(request).require_controller()
        return {"recorded": controller.on_fullscreen_change(body.is_fullscreen)}

    @app.post("/session/events/keydown", response_model=KeydownResponse)
    async def keydown_event(body: KeyEvent, request: Request):
        controller = get_agent(request).require_controller()
        prevent_default, recorded = controller.on_keydown(body)
        return KeydownResponse(prevent_default=prevent_default, recorded=recorded)

    @app.post("/session/events/file-picker")
    async def file_picker_event(body: FilePickerEventRequest, request: Request):
        controller = get_agent(request).require_controller()
        controller.on_file_picker(body.open)
        return {"overlay_open": controller.violations.overlay_open}

    # ============== Answer pages ==============

    @app.post("/session/pages", response_model=PageResponse)
    async def add_page(request: Request, file: UploadFile = File(...)):
        controller = get_agent(request).require_controller()
        blob = await file.read()
        content_type = file.content_type
        if content_type == "application/octet-stream":
            # let the page set identify it from its magic bytes
            content_type = None
        return page_response(controller.add_page(blob, content_type))

    @app.delete("/session/pages/{page_id}")
    async def remove_page(page_id: str, request: Request):
        controller = get_agent(request).require_controller()
        controller.remove_page(page_id)
        return {"removed": page_id}

    @app.post("/session/pages/capture", response_model=PageResponse)
    async def capture_page(request: Request):
        controller = get_agent(request).require_controller()
        return page_response(await controller.capture_page())

    @app.post("/session/pages/reset")
    async def reset_pages(request: Request):
        controller = get_agent(request).require_controller()
        controller.reset_pages()
        return {"pages": 0}

    @app.post("/session/pages/finalize", response_model=FinalizeResponse)
    async def finalize_pages(request: Request):
        controller = get_agent(request).require_controller()
        ref = await controller.finalize_pages()
        return FinalizeResponse(answer_artifact_ref=ref, locked=controller.pipeline.locked)

    # ============== Mobile handoff ==============

    @app.post("/session/mobile-handoff", response_model=MobileHandoffResponse)
    async def request_mobile_handoff(body: MobileHandoffRequest, request: Request):
        controller = get_agent(request).require_controller()
        req = await controller.request_mobile_upload(body.contact, body.expiry_minutes)
        return MobileHandoffResponse(
            token=req.token,
            upload_url=req.upload_url,
            expires_at_epoch_ms=req.expires_at_epoch_ms,
            status=req.status,
            upload_count=req.upload_count,
        )

    @app.get("/session/mobile-handoff/qr")
    async def mobile_handoff_qr(request: Request):
        controller = get_agent(request).require_controller()
        return Response(content=controller.mobile.qr_png(), media_type="image/png")

    # ============== Submit / exit ==============

    @app.post("/session/submit", response_model=SessionResponse)
    async def submit_session(body: SubmitSessionRequest, request: Request):
        controller = get_agent(request).require_controller()
        result = await controller.submit(auto=False, reason=SubmitReason.MANUAL)
        message = "Test submitted successfully" if result else "Submission already in progress"
        return session_response(controller, message)

    @app.post("/session/submit/retry", response_model=SessionResponse)
    async def retry_submit(request: Request):
        controller = get_agent(request).require_controller()
        await controller.retry_submit()
        return session_response(controller, "Test submitted successfully")

    @app.post("/session/exit", response_model=SessionResponse)
    async def exit_session(request: Request):
        controller = get_agent(request).require_controller()
        await controller.exit()
        return session_response(controller, "Test exited successfully")

    # ============== Signals ==============

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        """WebSocket endpoint for real-time session signals."""
        await websocket.accept()
        agent: AgentState = websocket.app.state.agent
        agent.websocket_connections.add(websocket)
        logger.debug(f"WebSocket connected, total connections: {len(agent.websocket_connections)}")

        try:
            await websocket.send_json({
                "type": "connected",
                "session_id": agent.controller.session.session_id if agent.controller else None,
                "message": "Connected to proctoring agent",
            })

            while True:
                try:
                    data = await asyncio.wait_for(websocket.receive_text(), timeout=30.0)
                    await websocket.send_json({
                        "type": "pong",
                        "data": data,
                    })
                except asyncio.TimeoutError:
                    await websocket.send_json({
                        "type": "ping",
                        "timestamp": datetime.now().isoformat(),
                    })
                except WebSocketDisconnect:
                    logger.debug("WebSocket disconnected")
                    break
        except Exception as e:
            logger.error(f"WebSocket error: {e}")
        finally:
            agent.websocket_connections.discard(websocket)

    # ============== Agent ==============

    @app.get("/health")
    async def health_check(request: Request):
        """Health check endpoint."""
        agent = get_agent(request)
        return {
            "status": "healthy",
            "session": agent.controller.status() if agent.controller else None,
            "timestamp": datetime.now().isoformat(),
        }

    @app.get("/cameras")
    async def list_cameras():
        """List available camera indices on this machine."""
        availability = await asyncio.to_thread(detect_available_cameras)
        available = [idx for idx, ok in availability.items() if ok]
        return {"available_indices": available, "probed": list(availability.keys())}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    uvicorn.run(app, host=default_settings.AGENT_HOST, port=default_settings.AGENT_PORT)
