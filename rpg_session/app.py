import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from rpg_session.config import Settings, load_settings
from rpg_session.coordinator import InvalidPayloadError, PlayerNotJoinedError, SessionHub
from rpg_session.directory import SessionDirectory
from rpg_session.llm import LLM, EchoLLM, HttpLLM
from rpg_session.narrator import Narrator
from rpg_session.routes import router
from rpg_session.storage import JsonFileStore, SessionStore, StorageError

logger = logging.getLogger(__name__)


def _build_llm(settings: Settings) -> LLM:
    if not settings.llm_provider_url:
        logger.warning("LLM_PROVIDER_URL is not set, narration will echo player actions")
        return EchoLLM()
    return HttpLLM(
        provider_url=settings.llm_provider_url,
        api_key=settings.llm_api_key,
        provider_format=settings.llm_provider_format,
        model=settings.llm_model,
        timeout=settings.llm_timeout,
    )


def _error(status: int, detail: str) -> JSONResponse:
    return JSONResponse(status_code=status, content={"detail": detail})


def create_app(
    settings: Settings | None = None,
    *,
    llm: LLM | None = None,
    store: SessionStore | None = None,
) -> FastAPI:
    settings = settings or load_settings()
    store = store or JsonFileStore(settings.data_dir)
    narrator = Narrator(
        llm or _build_llm(settings),
        max_attempts=settings.narration_max_attempts,
        backoff_ms=settings.narration_backoff_ms,
        max_tokens=settings.narration_max_tokens,
    )

    app = FastAPI(title="RPG Session")
    app.state.hub = SessionHub(
        store=store,
        directory=SessionDirectory(store),
        narrator=narrator,
        idle_timeout=settings.session_idle_timeout,
    )
    app.include_router(router, prefix="/api")

    @app.exception_handler(RequestValidationError)
    async def invalid_payload(request: Request, exc: RequestValidationError):
        logger.debug("Rejected payload on %s: %s", request.url.path, exc.errors())
        return _error(400, "Invalid request payload")

    @app.exception_handler(InvalidPayloadError)
    async def invalid_argument(request: Request, exc: InvalidPayloadError):
        return _error(400, "Invalid request payload")

    @app.exception_handler(PlayerNotJoinedError)
    async def player_not_joined(request: Request, exc: PlayerNotJoinedError):
        return _error(400, "Player not joined.")

    @app.exception_handler(StorageError)
    async def storage_unavailable(request: Request, exc: StorageError):
        logger.error("Storage failure on %s: %s", request.url.path, exc)
        return _error(502, "Session service unavailable")

    return app


# Default app instance for uvicorn (uses DATA_DIR env var or default)
app = create_app()
