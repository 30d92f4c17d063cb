"""FastAPI dependencies for database sessions, authentication and services."""
from typing import AsyncGenerator, Optional

import jwt
import structlog
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from metering.auth.jwt import jwt_auth
from metering.database import AsyncSessionLocal
from metering.services.container import Services
from metering.services.ledger_service import BalanceLedger
from metering.services.pool_service import ResourcePool

logger = structlog.get_logger(__name__)

# Missing credentials are reported as 401 below rather than by the scheme
security = HTTPBearer(auto_error=False)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Database session dependency.

    Yields:
        AsyncSession: Database session for the request lifecycle
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> dict[str, str]:
    """
    Authenticated caller from the bearer token.

    Returns:
        dict: Decoded claims (sub, role)

    Raises:
        HTTPException: If token is invalid, expired, or missing
    """
    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )

    token = credentials.credentials

    try:
        payload = jwt_auth.verify_access_token(token)
    except jwt.ExpiredSignatureError:
        logger.warning("token_expired")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has expired",
            headers={"WWW-Authenticate": "Bearer"},
        )
    except jwt.InvalidTokenError as e:
        logger.warning("invalid_token", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Invalid authentication token: {str(e)}",
            headers={"WWW-Authenticate": "Bearer"},
        )

    structlog.contextvars.bind_contextvars(caller=payload.get("sub"))
    return payload


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_ledger(db: AsyncSession = Depends(get_db), services: Services = Depends(get_services)) -> BalanceLedger:
    return services.ledger(db)


def get_pool(db: AsyncSession = Depends(get_db), services: Services = Depends(get_services)) -> ResourcePool:
    return services.pool(db)
