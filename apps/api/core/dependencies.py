"""
Dependencias inyectables de FastAPI.
Uso: añadir como parámetro en la firma del endpoint con Depends().

Los recursos compartidos (Database, PriceOracle, sink de email) viven en
app.state: los crea el lifespan de main.py y los tests pueden sustituirlos.
"""

from collections.abc import AsyncIterator

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import get_settings
from core.security import AuthContext, verify_token
from services.approval_engine import ApprovalEngine
from services.notifications import NotificationEmitter
from services.portfolio_service import PortfolioService
from services.price_oracle import PriceOracle
from services.swap_service import SwapService
from services.transaction_service import TransactionService

_bearer = HTTPBearer(auto_error=False)


# ---------------------------------------------------------------------------
# Sesión de base de datos
# ---------------------------------------------------------------------------


async def get_db(request: Request) -> AsyncIterator[AsyncSession]:
    """Proporciona una sesión SQLAlchemy async con rollback automático ante error."""
    async with request.app.state.db.session() as session:
        yield session


def get_oracle(request: Request) -> PriceOracle:
    return request.app.state.oracle


# ---------------------------------------------------------------------------
# Autenticación JWT
# ---------------------------------------------------------------------------


async def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer),
) -> AuthContext:
    """
    Valida el Bearer token JWT.
    Lanza 401 si falta, es inválido o está expirado.
    """
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Falta el token de autenticación",
            headers={"WWW-Authenticate": "Bearer"},
        )
    try:
        return verify_token(credentials.credentials, get_settings().SECRET_KEY)
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(exc),
            headers={"WWW-Authenticate": "Bearer"},
        ) from exc


async def require_admin(user: AuthContext = Depends(get_current_user)) -> AuthContext:
    """Lanza 403 si el llamador no tiene rol admin."""
    if not user.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Se requieren privilegios de administrador",
        )
    return user


# ---------------------------------------------------------------------------
# Servicios
# ---------------------------------------------------------------------------


def get_notifier(request: Request, db: AsyncSession = Depends(get_db)) -> NotificationEmitter:
    return NotificationEmitter(db, email_sink=getattr(request.app.state, "email_sink", None))


def get_approval_engine(
    db: AsyncSession = Depends(get_db),
    notifier: NotificationEmitter = Depends(get_notifier),
    oracle: PriceOracle = Depends(get_oracle),
) -> ApprovalEngine:
    return ApprovalEngine(db, notifier=notifier, oracle=oracle)


def get_transaction_service(
    db: AsyncSession = Depends(get_db),
    engine: ApprovalEngine = Depends(get_approval_engine),
    notifier: NotificationEmitter = Depends(get_notifier),
    oracle: PriceOracle = Depends(get_oracle),
) -> TransactionService:
    settings = get_settings()
    return TransactionService(
        db,
        engine=engine,
        notifier=notifier,
        oracle=oracle,
        min_deposit_usd=settings.MIN_DEPOSIT_USD,
        min_deposit_crypto=settings.MIN_DEPOSIT_CRYPTO,
    )


def get_portfolio_service(
    db: AsyncSession = Depends(get_db),
    oracle: PriceOracle = Depends(get_oracle),
) -> PortfolioService:
    return PortfolioService(db, oracle)


def get_swap_service(
    db: AsyncSession = Depends(get_db),
    oracle: PriceOracle = Depends(get_oracle),
    notifier: NotificationEmitter = Depends(get_notifier),
) -> SwapService:
    return SwapService(db, oracle, notifier=notifier)
