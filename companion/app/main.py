from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Optional
import logging

from fastapi import APIRouter, Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from companion.services.assets import ImageKitAssetStore
from companion.services.config import Settings, load_settings
from companion.services.conversation import ConversationStore
from companion.services.errors import AuthRequirementError, ChatError
from companion.services.identity import Identity, guest_identity, hash_token, registered_identity
from companion.services.keepalive import KeepAliveWorker
from companion.services.memory import MemoryAugmenter, PineconeIndex
from companion.services.openrouter import OpenRouterProvider
from companion.services.orchestrator import ChatOrchestrator
from companion.services.providers import BackoffState, ExternalProvider, GeminiProvider, GroqProvider
from companion.services.ratelimit import RateLimiter
from companion.services.router import ImageRequestClassifier, ProviderFailoverRouter
from companion.services.store import StorageBackend, create_store
from companion.services.telemetry import new_request_id

logger = logging.getLogger("uvicorn.error")


class ChatMessageRequest(BaseModel):
    """Request body for `POST /chat/message`."""

    text: str = ""
    mode: Optional[str] = None
    voiceMode: bool = False
    voiceDurationSeconds: Optional[float] = None


@dataclass
class ChatServices:
    """Everything the routes need, built once per app."""

    settings: Settings
    store: StorageBackend
    orchestrator: ChatOrchestrator
    router: ProviderFailoverRouter
    guest_limiter: RateLimiter
    chat_limiter: RateLimiter
    backoff: BackoffState
    keepalive: KeepAliveWorker


def build_services(
    settings: Settings,
    store: Optional[StorageBackend] = None,
    free_providers: Optional[Dict[str, object]] = None,
    premium_provider=None,
    asset_store=None,
    memory: Optional[MemoryAugmenter] = None,
    classifier: Optional[ImageRequestClassifier] = None,
    backoff: Optional[BackoffState] = None,
) -> ChatServices:
    store = store or create_store(settings)
    backoff = backoff or BackoffState()
    conversation = ConversationStore(store, settings.encryption_key_bytes)

    if free_providers is None:
        free_providers = {
            "groq": GroqProvider(settings, backoff),
            "openrouter": OpenRouterProvider(settings, backoff),
            "external": ExternalProvider(settings, backoff),
        }
    premium_provider = premium_provider or GeminiProvider(settings, backoff)
    if asset_store is None and settings.asset_store_enabled:
        asset_store = ImageKitAssetStore(settings)
    if memory is None and settings.vector_memory_enabled and isinstance(premium_provider, GeminiProvider):
        memory = MemoryAugmenter(PineconeIndex.from_settings(settings), premium_provider, conversation)

    router = ProviderFailoverRouter(
        free_providers,
        premium_provider,
        provider_order=settings.FREE_CHAT_PROVIDER_ORDER,
        classifier=classifier,
        asset_store=asset_store,
    )
    orchestrator = ChatOrchestrator(settings, store, conversation, router, memory=memory)
    return ChatServices(
        settings=settings,
        store=store,
        orchestrator=orchestrator,
        router=router,
        guest_limiter=RateLimiter(
            settings.GUEST_CHAT_RATE_LIMIT_PER_MINUTE,
            60,
            "Too many guest messages. Please slow down.",
            "GUEST_CHAT_RATE_LIMITED",
        ),
        chat_limiter=RateLimiter(
            settings.CHAT_RATE_LIMIT_PER_MINUTE,
            60,
            "Too many chat requests. Please slow down.",
            "CHAT_RATE_LIMITED",
        ),
        backoff=backoff,
        keepalive=KeepAliveWorker(settings, conversation, router),
    )


def get_services(request: Request) -> ChatServices:
    return request.app.state.services


async def get_identity(request: Request, services: ChatServices = Depends(get_services)) -> Identity:
    """Resolve the caller: a bearer token must match an account, otherwise guest."""
    header = request.headers.get("authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() == "bearer" and token.strip():
        account = await services.store.find_account_by_token(hash_token(token))
        if account is None:
            raise AuthRequirementError("Invalid or expired token.", code="INVALID_TOKEN")
        return registered_identity(account)
    client_host = request.client.host if request.client else None
    return guest_identity(request.headers, request.cookies, client_host)


async def require_account(identity: Identity = Depends(get_identity)) -> Identity:
    if not identity.is_authenticated:
        raise AuthRequirementError("Login required.")
    return identity


routes = APIRouter()


@routes.get("/health")
async def health(services: ChatServices = Depends(get_services)):
    router = services.router
    providers = {name: bool(getattr(p, "configured", True)) for name, p in router.free_providers.items()}
    providers[router.premium_provider.name] = bool(getattr(router.premium_provider, "configured", True))
    return {
        "status": "ok",
        "storage": services.store.name,
        "providers": providers,
        "providerOrder": router.provider_order,
        "vectorMemory": services.orchestrator.vector_memory_enabled,
        "assetStore": bool(router.asset_store is not None and router.asset_store.configured),
        "keepalive": services.keepalive.running,
    }


@routes.get("/ping")
async def ping():
    return {"pong": True, "timestamp": datetime.now(timezone.utc).isoformat()}


@routes.post("/chat/message")
async def send_message(
    req: ChatMessageRequest,
    request: Request,
    identity: Identity = Depends(get_identity),
    services: ChatServices = Depends(get_services),
):
    if not identity.is_authenticated:
        services.guest_limiter.hit(identity.rate_limit_key)
    services.chat_limiter.hit(identity.rate_limit_key)

    result = await services.orchestrator.send_message(
        identity,
        req.text,
        mode=req.mode,
        voice_mode=req.voiceMode,
        voice_duration_seconds=req.voiceDurationSeconds,
        request_id=request.state.request_id,
    )
    return result.to_dict()


@routes.get("/chat/history")
async def get_history(
    mode: Optional[str] = None,
    limit: int = Query(40),
    identity: Identity = Depends(require_account),
    services: ChatServices = Depends(get_services),
):
    return await services.orchestrator.get_history(identity, mode, limit)


@routes.delete("/chat/history")
async def clear_history(
    mode: Optional[str] = None,
    identity: Identity = Depends(require_account),
    services: ChatServices = Depends(get_services),
):
    return await services.orchestrator.clear_history(identity, mode)


def create_app(settings: Optional[Settings] = None, **overrides) -> FastAPI:
    """Build the FastAPI app. `overrides` are passed to `build_services`."""
    settings = settings or load_settings()
    services = build_services(settings, **overrides)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await services.store.initialize()
        services.keepalive.start()
        try:
            yield
        finally:
            await services.keepalive.stop()
            await services.store.close()

    app = FastAPI(title="Companion Chat", lifespan=lifespan)
    app.state.services = services

    @app.middleware("http")
    async def attach_request_id(request: Request, call_next):
        request_id = request.headers.get("x-request-id", "").strip() or new_request_id()
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers["x-request-id"] = request_id
        return response

    @app.exception_handler(ChatError)
    async def chat_error_handler(request: Request, exc: ChatError):
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s (%s)", request.method, request.url.path, exc.message, exc.code)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=400,
            content={
                "message": "Invalid request body.",
                "code": "VALIDATION_ERROR",
                "details": {"errors": [{"loc": list(e["loc"]), "msg": e["msg"]} for e in exc.errors()]},
            },
        )

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(status_code=500, content={"message": "Internal server error.", "code": "INTERNAL_ERROR"})

    app.include_router(routes)
    return app


app = create_app()
