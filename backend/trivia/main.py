from contextlib import asynccontextmanager
from typing import Any, Optional

import structlog
from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .collaborators import LeaderboardRefresher, LoggingLeaderboardRefresher
from .db import Settings, ensure_indexes, get_database, get_settings
from .errors import TriviaError
from .game import GameService
from .log_config import configure_logging
from .questions import QuestionProvider, StoredQuestionProvider, load_question_bank
from .rate_limit import RateLimiter
from .repository import TriviaRepository
from .schemas import (
    AdminUpsertQuestionsIn,
    CreateSessionIn,
    CreateSessionOut,
    ErrorOut,
    PublicSessionOut,
    SessionResultsOut,
    SubmitAnswerIn,
    SubmitAnswerOut,
    UserStatsOut,
)

logger = structlog.get_logger(__name__)


def get_service(request: Request) -> GameService:
    return request.app.state.service


def create_app(
    config: Optional[Settings] = None,
    database: Any = None,
    provider: Optional[QuestionProvider] = None,
    leaderboard: Optional[LeaderboardRefresher] = None,
    rate_limiter: Optional[RateLimiter] = None,
) -> FastAPI:
    config = config or get_settings()
    configure_logging(config.LOG_LEVEL, config.LOG_FORMAT)

    database = database if database is not None else get_database(config)
    service = GameService(
        repository=TriviaRepository(database),
        provider=provider or StoredQuestionProvider(database),
        rate_limiter=rate_limiter or RateLimiter(),
        leaderboard=leaderboard or LoggingLeaderboardRefresher(),
        config=config,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await ensure_indexes(database)
        if config.QUESTION_BANK_PATH:
            await load_question_bank(database, config.QUESTION_BANK_PATH)
        yield
        await service.drain()

    app = FastAPI(title="Trivia API", lifespan=lifespan)
    app.state.service = service
    app.state.settings = config

    origins = [o.strip() for o in config.CORS_ORIGINS.split(",") if o.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins or ["*"],
        allow_origin_regex=config.CORS_ORIGIN_REGEX or None,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(TriviaError)
    async def trivia_error_handler(request: Request, exc: TriviaError):
        if exc.status_code >= 500:
            logger.error("request_failed", path=request.url.path, code=exc.code, error=exc.message)
        body = ErrorOut(error=exc.message, code=exc.code)
        return JSONResponse(status_code=exc.status_code, content=body.model_dump(by_alias=True))

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        fields = sorted({".".join(str(p) for p in err["loc"][1:]) for err in exc.errors()})
        body = ErrorOut(error=f"Missing or invalid fields: {', '.join(fields)}", code="validation_error")
        return JSONResponse(status_code=400, content=body.model_dump(by_alias=True))

    def require_admin(x_admin_key: Optional[str] = Header(default=None)):
        if x_admin_key != config.ADMIN_KEY:
            raise HTTPException(status_code=401, detail="Invalid admin key")

    @app.post("/api/game/session", response_model=CreateSessionOut, response_model_by_alias=True)
    async def create_session(payload: CreateSessionIn, service: GameService = Depends(get_service)):
        return await service.create_session(payload)

    @app.get("/api/game/session/{session_id}", response_model=PublicSessionOut, response_model_by_alias=True)
    async def get_session(session_id: int, service: GameService = Depends(get_service)):
        return await service.get_session(session_id)

    @app.delete("/api/game/session/{session_id}", response_model=PublicSessionOut, response_model_by_alias=True)
    async def cancel_session(session_id: int, service: GameService = Depends(get_service)):
        return await service.cancel_session(session_id)

    @app.get(
        "/api/game/session/{session_id}/results",
        response_model=SessionResultsOut,
        response_model_by_alias=True,
    )
    async def session_results(session_id: int, service: GameService = Depends(get_service)):
        return await service.results(session_id)

    @app.post("/api/scores", response_model=SubmitAnswerOut, response_model_by_alias=True)
    async def submit_answer(payload: SubmitAnswerIn, service: GameService = Depends(get_service)):
        return await service.submit_answer(payload)

    @app.get("/api/users/{identity}", response_model=UserStatsOut, response_model_by_alias=True)
    async def user_stats(identity: str, service: GameService = Depends(get_service)):
        return await service.user_stats(identity)

    @app.post("/api/admin/questions")
    async def upsert_questions(
        payload: AdminUpsertQuestionsIn,
        _: None = Depends(require_admin),
        service: GameService = Depends(get_service),
    ):
        count = await service.upsert_questions(payload.questions)
        return {"ok": True, "count": count}

    @app.get("/api/admin/verify")
    async def verify(_: None = Depends(require_admin)):
        return {"ok": True}

    return app


app = create_app()
