import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from mangum import Mangum

from core.config import Settings, get_settings
from core.db import Database
from core.errors import ServiceError
from ledger.api import router as ledger_router
from ledger.service import LedgerService, PointPolicyCatalog
from promise.api import router as promise_router
from promise.service import EvaluationWorkflow, PromiseBook, ShareTokenIssuer
from rules.api import router as rules_router
from rules.rule_engine import RewardTrigger, default_reward_rules

log = logging.getLogger("promise_ledger.api")


def _error_body(code: str, message: str) -> dict:
    return {"error": {"code": code, "message": message}}


def install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(ServiceError)
    async def service_error_handler(request: Request, exc: ServiceError):
        return JSONResponse(status_code=exc.status_code, content=_error_body(exc.code, exc.message))

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        details = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()
        )
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=_error_body("INVALID_INPUT", details))

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        log.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=_error_body("INTERNAL_ERROR", "Internal error"),
        )


def create_app(settings: Optional[Settings] = None, database: Optional[Database] = None) -> FastAPI:
    settings = settings or get_settings()
    database = database or Database(settings.database_url, echo=settings.sql_echo)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        database.create_all()
        log.info("Promise ledger starting against %s", database.engine.url.render_as_string(hide_password=True))
        yield

    app = FastAPI(
        title="Promise Ledger API",
        description="Promise sharing, single-shot evaluations and an idempotent point ledger",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    install_error_handlers(app)

    catalog = PointPolicyCatalog(database)
    ledger = LedgerService(database)
    reward_trigger = RewardTrigger(ledger, catalog)
    for rule in default_reward_rules():
        reward_trigger.add_rule(rule)

    app.state.settings = settings
    app.state.database = database
    app.state.policy_catalog = catalog
    app.state.ledger_service = ledger
    app.state.reward_trigger = reward_trigger
    app.state.promise_book = PromiseBook(database)
    app.state.share_issuer = ShareTokenIssuer(database, settings)
    app.state.evaluation_workflow = EvaluationWorkflow(database, settings, reward_trigger=reward_trigger)

    @app.get("/health", tags=["System"])
    def health_check():
        return {"status": "healthy", "service": "promise-ledger"}

    app.include_router(promise_router)
    app.include_router(ledger_router)
    app.include_router(rules_router)
    return app


logging.basicConfig(
    level=get_settings().log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = create_app()
handler = Mangum(app)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
