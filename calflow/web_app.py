from __future__ import annotations

import logging
import os
from typing import Any

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, Header, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from pymongo import MongoClient

from calflow.auth import AuthorizationGate, FirebaseTokenVerifier, TokenVerifier, bearer_token
from calflow.config_manager import ConfigManager
from calflow.engine import Engine, StepEngine
from calflow.errors import FlowError
from calflow.flow_store import FlowStore
from calflow.history import DEFAULT_LIMIT, HistoryRecorder
from calflow.models import AppConfig, Flow
from calflow.orchestrator import ExecutionOrchestrator
from calflow.scheduler import CacheJanitor
from calflow.source_cache import HTTPSourceFetcher, SourceCache

logger = logging.getLogger(__name__)

APP_VERSION = "0.1.0"
CALENDAR_MEDIA_TYPE = "text/calendar"


class AppContext:
    def __init__(
        self,
        *,
        config: AppConfig,
        flow_store: FlowStore,
        history: HistoryRecorder,
        source_cache: SourceCache,
        verifier: TokenVerifier,
        engine: Engine | None = None,
        mongo_client: MongoClient | None = None,
    ) -> None:
        self.config = config
        self.flow_store = flow_store
        self.history = history
        self.source_cache = source_cache
        self.verifier = verifier
        self.gate = AuthorizationGate()
        self.orchestrator = ExecutionOrchestrator(
            flow_store=flow_store,
            history=history,
            source_cache=source_cache,
            engine=engine or StepEngine(),
            gate=self.gate,
        )
        self.janitor = CacheJanitor(source_cache, config.cache.sweep_interval_seconds)
        self.mongo_client = mongo_client

    @classmethod
    def from_config(cls, config: AppConfig, engine: Engine | None = None) -> "AppContext":
        client: MongoClient = MongoClient(config.storage.uri, tz_aware=True)
        database = client[config.storage.database]
        fetcher = HTTPSourceFetcher(
            timeout=config.cache.fetch_timeout_seconds,
            max_content_length=config.cache.max_content_length,
        )
        return cls(
            config=config,
            flow_store=FlowStore(database[config.storage.flow_collection]),
            history=HistoryRecorder(database[config.storage.history_collection]),
            source_cache=SourceCache(fetcher),
            verifier=FirebaseTokenVerifier(config.auth.credentials_file),
            engine=engine,
            mongo_client=client,
        )

    def start(self) -> None:
        self.flow_store.create_indexes()
        self.history.create_indexes()
        self.janitor.start()

    def stop(self) -> None:
        self.janitor.stop()
        if self.mongo_client is not None:
            self.mongo_client.close()


def _client_address(request: Request) -> str:
    forwarded = request.headers.get("X-Forwarded-For", "")
    if forwarded.strip():
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else ""


def _header_value(value: Any) -> str:
    single_line = " ".join(str(value).splitlines())
    return single_line.encode("latin-1", errors="replace").decode("latin-1")


def _debug_headers(messages: list[str]) -> dict[str, str]:
    headers = {"X-Debug-Message-Count": str(len(messages))}
    for index, message in enumerate(messages, start=1):
        headers[f"X-Debug-Message-{index}"] = _header_value(message)
    return headers


def _load_context(engine: Engine | None = None) -> AppContext:
    if not load_dotenv():
        logger.info("No .env file found")
    config_path = os.getenv("CALFLOW_CONFIG_PATH", "config.yaml")
    config = ConfigManager(config_path).load_required()
    return AppContext.from_config(config, engine=engine)


def create_app(context: AppContext | None = None, engine: Engine | None = None) -> FastAPI:
    if context is None:
        context = _load_context(engine)

    app = FastAPI(title="calflow", version=APP_VERSION)
    app.state.context = context
    app.add_middleware(
        CORSMiddleware,
        allow_origins=context.config.server.allow_origins,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["*"],
    )

    @app.on_event("startup")
    def _startup() -> None:
        app.state.context.start()

    @app.on_event("shutdown")
    def _shutdown() -> None:
        app.state.context.stop()

    @app.exception_handler(FlowError)
    async def _flow_error(_request: Request, exc: FlowError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})

    def current_user(authorization: str | None = Header(default=None)) -> str:
        return app.state.context.verifier.verify(bearer_token(authorization))

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {
            "status": "ok",
            "version": APP_VERSION,
            "commit": os.getenv("CALFLOW_BUILD_COMMIT", ""),
            "date": os.getenv("CALFLOW_BUILD_DATE", ""),
        }

    @app.get("/flows")
    def list_flows(user_id: str = Depends(current_user)) -> list[dict[str, Any]]:
        heads = app.state.context.flow_store.list_by_owner(user_id)
        return [head.model_dump(mode="json", by_alias=True) for head in heads]

    @app.post("/flows")
    def save_flow(flow: Flow, request: Request, user_id: str = Depends(current_user)) -> PlainTextResponse:
        result = app.state.context.orchestrator.update(
            flow,
            caller_id=user_id,
            address=_client_address(request),
        )
        return PlainTextResponse(result.message(), status_code=201 if result.created else 200)

    @app.get("/{flow_id}.ics")
    def execute_flow(flow_id: str, request: Request, verbose: bool = False, debug: bool = True) -> Response:
        result = app.state.context.orchestrator.execute(
            flow_id,
            address=_client_address(request),
            verbose=verbose,
            debug=debug,
        )
        return Response(
            content=result.calendar,
            media_type=CALENDAR_MEDIA_TYPE,
            headers=_debug_headers(result.debug_messages),
        )

    @app.get("/{flow_id}.json")
    def get_flow(flow_id: str, user_id: str = Depends(current_user)) -> dict[str, Any]:
        flow = app.state.context.flow_store.find_by_id(flow_id)
        app.state.context.gate.require_read(user_id, flow)
        return flow.model_dump(mode="json", by_alias=True)

    @app.get("/{flow_id}/history")
    def flow_history(
        flow_id: str,
        limit: int = DEFAULT_LIMIT,
        _user_id: str = Depends(current_user),
    ) -> list[dict[str, Any]]:
        entries = app.state.context.history.recent(flow_id, limit=limit)
        return [entry.model_dump(mode="json", by_alias=True) for entry in entries]

    @app.delete("/{flow_id}")
    def delete_flow(flow_id: str, request: Request, user_id: str = Depends(current_user)) -> PlainTextResponse:
        deleted = app.state.context.orchestrator.delete(
            flow_id,
            caller_id=user_id,
            address=_client_address(request),
        )
        return PlainTextResponse(f"deleted {deleted}")

    return app
