from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from chatrelay.api.routes import router as api_router
from chatrelay.config import settings
from chatrelay.conversation.context import ContextAssembler, SummaryGenerator
from chatrelay.conversation.store import SqlConversationStore
from chatrelay.core.orchestrator import FailoverOrchestrator
from chatrelay.database import async_session, engine, init_db
from chatrelay.llm.registry import build_providers
from chatrelay.observability.logger import get_logger, setup_logging
from chatrelay.quota.ledger import QuotaLedger

setup_logging()
log = get_logger("main")

MIN_JWT_SECRET_LENGTH = 32

# Shared application state, accessed by API routes
app_state = {}


@asynccontextmanager
async def lifespan(app: FastAPI):
    log.info("chatrelay_starting")

    if len(settings.jwt_secret) < MIN_JWT_SECRET_LENGTH:
        log.warning("jwt_secret_too_short", length=len(settings.jwt_secret),
                    minimum=MIN_JWT_SECRET_LENGTH)

    # 1. Database tables
    await init_db()
    log.info("database_initialized")

    # 2. Quota ledger, provider clients, conversation store
    ledger = QuotaLedger()
    providers = build_providers()
    store = SqlConversationStore(async_session)
    context = ContextAssembler(
        store,
        char_budget=settings.context_char_budget,
        recent_turns=settings.context_recent_turns,
    )
    summaries = SummaryGenerator(
        ledger, providers, store,
        interval=settings.summary_interval,
        timeout_seconds=settings.provider_timeout_seconds,
    )
    orchestrator = FailoverOrchestrator(
        ledger, providers, store, context,
        summaries=summaries,
        max_attempts=settings.max_attempts,
        timeout_seconds=settings.provider_timeout_seconds,
    )

    app_state.update({
        "ledger": ledger,
        "providers": providers,
        "store": store,
        "context": context,
        "summaries": summaries,
        "orchestrator": orchestrator,
        "session_factory": async_session,
    })

    log.info("chatrelay_ready", current_provider=ledger.current_provider,
             providers=[name for name, p in providers.items() if p.is_available()])

    yield

    # Shutdown
    log.info("chatrelay_shutting_down")
    await summaries.drain()
    await engine.dispose()


app = FastAPI(title="chatrelay", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(api_router)
