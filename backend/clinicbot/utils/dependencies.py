# /clinicbot/utils/dependencies.py

import structlog
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import APIKeyHeader

from clinicbot.config.settings import settings
from clinicbot.services.ai_service import AIService
from clinicbot.services.cache_service import CacheService
from clinicbot.services.db_service import DatabaseService, create_mongo_client
from clinicbot.services.nlp_service import IntentClassifier
from clinicbot.services.orchestrator import DialogueOrchestrator
from clinicbot.services.security_service import DuplicateDeliveryGuard, IdentityRateLimiter, SecurityService
from clinicbot.services.session_store import SessionStore
from clinicbot.workflows.engine import FlowExecutor
from clinicbot.workflows.registry import registry

# Wiring of the production object graph and the FastAPI dependencies that
# hand it to the routes. Everything is built once in the lifespan.

log = structlog.get_logger(__name__)
api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


class ServiceContainer:
    def __init__(self, mongo_client, cache, db, sessions, orchestrator):
        self.mongo_client = mongo_client
        self.cache = cache
        self.db = db
        self.sessions = sessions
        self.orchestrator = orchestrator

    async def close(self):
        await self.cache.close()
        self.mongo_client.close()


def build_orchestrator(db, sessions, cache=None, ai_service=None, settings_obj=settings) -> DialogueOrchestrator:
    redis_client = cache.redis if cache is not None else None
    return DialogueOrchestrator(
        session_store=sessions,
        db=db,
        classifier=IntentClassifier(registry, ai_service=ai_service),
        executor=FlowExecutor(registry, db, settings_obj),
        registry=registry,
        rate_limiter=IdentityRateLimiter(redis_client, settings_obj.rate_limit_per_identity, settings_obj.rate_limit_window_seconds),
        duplicate_guard=DuplicateDeliveryGuard(redis_client, settings_obj.dedupe_ttl_seconds),
        settings_obj=settings_obj,
    )


def build_services(settings_obj=settings) -> ServiceContainer:
    mongo_client = create_mongo_client(settings_obj)
    database = mongo_client.get_default_database()
    cache = CacheService(settings_obj.redis_url)
    db = DatabaseService(database, cache, settings_obj)
    sessions = SessionStore(database, settings_obj, registry)

    ai_service = None
    if settings_obj.llm_configured:
        ai_service = AIService(settings_obj)
        log.info("llm_classifier_enabled", gemini=bool(settings_obj.gemini_api_key), openai=bool(settings_obj.openai_api_key))

    orchestrator = build_orchestrator(db, sessions, cache, ai_service, settings_obj)
    return ServiceContainer(mongo_client, cache, db, sessions, orchestrator)


def get_services(request: Request) -> ServiceContainer:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Service is starting up")
    return services


def get_orchestrator(services: ServiceContainer = Depends(get_services)) -> DialogueOrchestrator:
    return services.orchestrator


async def verify_api_key(api_key: str | None = Depends(api_key_header)):
    if not SecurityService.verify_api_key(api_key, settings.api_key):
        log.warning("invalid_api_key")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid API key")
