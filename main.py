import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator, Optional

from fastapi import APIRouter, Depends, FastAPI, Query, Request, Response
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from config import Settings, get_settings
from dashboard import DashboardRepository, DashboardService
from database import build_engine, build_session_factory
from errors import AppError, UnauthorizedError, ValidationError
from models import TransactionType
from scheduler import SchedulerManager
from schemas import (
    AuthOut,
    CategoryIn,
    CategoryOut,
    CategoryUpdateIn,
    DashboardSnapshot,
    LoginIn,
    RefreshIn,
    RegisterIn,
    TokenPairOut,
    TransactionIn,
    TransactionOut,
    TransactionPage,
    TransactionSort,
    TransactionUpdateIn,
)
from security import TokenPayload, TokenSigner
from services import (
    AuthService,
    CategoryService,
    TransactionFilters,
    TransactionService,
)

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


async def get_db(request: Request) -> AsyncIterator[AsyncSession]:
    async with request.app.state.session_factory() as session:
        yield session


def get_signer(request: Request) -> TokenSigner:
    return request.app.state.signer


def get_dashboard_service(request: Request) -> DashboardService:
    return request.app.state.dashboard_service


def current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    signer: TokenSigner = Depends(get_signer),
) -> TokenPayload:
    if credentials is None or not credentials.credentials:
        raise UnauthorizedError("No token provided")
    return signer.verify_access_token(credentials.credentials)


auth_router = APIRouter(prefix="/api/v1/auth", tags=["auth"])


@auth_router.post("/register", response_model=AuthOut, status_code=201)
async def register(
    data: RegisterIn,
    db: AsyncSession = Depends(get_db),
    signer: TokenSigner = Depends(get_signer),
):
    return await AuthService(db, signer).register(data)


@auth_router.post("/login", response_model=AuthOut)
async def login(
    data: LoginIn,
    db: AsyncSession = Depends(get_db),
    signer: TokenSigner = Depends(get_signer),
):
    return await AuthService(db, signer).login(data)


@auth_router.post("/refresh", response_model=TokenPairOut)
async def refresh(
    data: RefreshIn,
    db: AsyncSession = Depends(get_db),
    signer: TokenSigner = Depends(get_signer),
):
    return await AuthService(db, signer).refresh(data.refresh_token)


category_router = APIRouter(prefix="/api/v1/categories", tags=["categories"])


@category_router.get("", response_model=list[CategoryOut])
async def list_categories(
    type: Optional[TransactionType] = None,
    user: TokenPayload = Depends(current_user),
    db: AsyncSession = Depends(get_db),
):
    return await CategoryService(db, user.user_id).list_all(type)


@category_router.post("", response_model=CategoryOut, status_code=201)
async def create_category(
    data: CategoryIn,
    user: TokenPayload = Depends(current_user),
    db: AsyncSession = Depends(get_db),
):
    return await CategoryService(db, user.user_id).create(data)


@category_router.get("/{category_id}", response_model=CategoryOut)
async def get_category(
    category_id: uuid.UUID,
    user: TokenPayload = Depends(current_user),
    db: AsyncSession = Depends(get_db),
):
    return await CategoryService(db, user.user_id).get(category_id)


@category_router.patch("/{category_id}", response_model=CategoryOut)
async def update_category(
    category_id: uuid.UUID,
    data: CategoryUpdateIn,
    user: TokenPayload = Depends(current_user),
    db: AsyncSession = Depends(get_db),
):
    return await CategoryService(db, user.user_id).update(category_id, data)


@category_router.delete("/{category_id}", status_code=204)
async def delete_category(
    category_id: uuid.UUID,
    user: TokenPayload = Depends(current_user),
    db: AsyncSession = Depends(get_db),
):
    await CategoryService(db, user.user_id).delete(category_id)
    return Response(status_code=204)


transaction_router = APIRouter(prefix="/api/v1/transactions", tags=["transactions"])


@transaction_router.get("", response_model=TransactionPage)
async def list_transactions(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    search: Optional[str] = Query(None, max_length=200),
    type: Optional[TransactionType] = None,
    category_id: Optional[uuid.UUID] = Query(None, alias="categoryId"),
    sort: TransactionSort = "newest",
    user: TokenPayload = Depends(current_user),
    db: AsyncSession = Depends(get_db),
):
    filters = TransactionFilters(type=type, category_id=category_id, query=search)
    result = await TransactionService(db, user.user_id).list(
        filters, sort=sort, page=page, limit=limit
    )
    return TransactionPage(
        items=[TransactionOut.model_validate(txn) for txn in result.items],
        total=result.total,
        page=result.page,
        limit=result.limit,
        total_pages=result.total_pages,
    )


@transaction_router.post("", response_model=TransactionOut, status_code=201)
async def create_transaction(
    data: TransactionIn,
    user: TokenPayload = Depends(current_user),
    db: AsyncSession = Depends(get_db),
):
    return await TransactionService(db, user.user_id).create(data)


@transaction_router.get("/{transaction_id}", response_model=TransactionOut)
async def get_transaction(
    transaction_id: uuid.UUID,
    user: TokenPayload = Depends(current_user),
    db: AsyncSession = Depends(get_db),
):
    return await TransactionService(db, user.user_id).get(transaction_id)


@transaction_router.patch("/{transaction_id}", response_model=TransactionOut)
async def update_transaction(
    transaction_id: uuid.UUID,
    data: TransactionUpdateIn,
    user: TokenPayload = Depends(current_user),
    db: AsyncSession = Depends(get_db),
):
    return await TransactionService(db, user.user_id).update(transaction_id, data)


@transaction_router.delete("/{transaction_id}", status_code=204)
async def delete_transaction(
    transaction_id: uuid.UUID,
    user: TokenPayload = Depends(current_user),
    db: AsyncSession = Depends(get_db),
):
    await TransactionService(db, user.user_id).delete(transaction_id)
    return Response(status_code=204)


dashboard_router = APIRouter(prefix="/api/v1/dashboard", tags=["dashboard"])


@dashboard_router.get("", response_model=DashboardSnapshot)
async def dashboard(
    user: TokenPayload = Depends(current_user),
    service: DashboardService = Depends(get_dashboard_service),
):
    return await service.get_dashboard(user.user_id)


async def handle_app_error(request: Request, exc: AppError) -> JSONResponse:
    logger.warning(
        f"app_error: status={exc.status_code} message={exc.message} "
        f"method={request.method} path={request.url.path}"
    )
    body: dict[str, object] = {"message": exc.message}
    if isinstance(exc, ValidationError) and exc.errors is not None:
        body["errors"] = exc.errors
    return JSONResponse(status_code=exc.status_code, content={"error": body})


async def handle_request_validation_error(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    error = ValidationError("Validation failed", jsonable_encoder(exc.errors()))
    return await handle_app_error(request, error)


async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(
        f"unhandled_error: method={request.method} path={request.url.path}",
        exc_info=exc,
    )
    return JSONResponse(
        status_code=500, content={"error": {"message": "Internal server error"}}
    )


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()
    logging.basicConfig(level=settings.log_level)

    engine = build_engine(settings.database_url)
    session_factory = build_session_factory(engine)
    signer = TokenSigner(
        settings.token_secret,
        settings.access_token_ttl_secs,
        settings.refresh_token_ttl_secs,
    )
    scheduler_manager = SchedulerManager(session_factory, signer)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if settings.scheduler_enabled:
            scheduler_manager.start()
        try:
            yield
        finally:
            scheduler_manager.stop()
            await engine.dispose()

    app = FastAPI(title="Finance Dashboard API", lifespan=lifespan)
    app.state.settings = settings
    app.state.engine = engine
    app.state.session_factory = session_factory
    app.state.signer = signer
    app.state.dashboard_service = DashboardService(DashboardRepository(session_factory))

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        logger.info(f"request: method={request.method} path={request.url.path}")
        return await call_next(request)

    app.add_exception_handler(AppError, handle_app_error)
    app.add_exception_handler(RequestValidationError, handle_request_validation_error)
    app.add_exception_handler(Exception, handle_unexpected_error)

    @app.get("/health")
    async def health():
        return {"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()}

    app.include_router(auth_router)
    app.include_router(category_router)
    app.include_router(transaction_router)
    app.include_router(dashboard_router)
    return app
