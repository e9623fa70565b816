import logging
from typing import Optional
from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from tickethub.auth.schemas import AdminActor, CustomerIdentity
from tickethub.auth.telegram import InitDataError, verify_init_data
from tickethub.auth.utils import verify_token
from tickethub.config import settings

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)

def resolve_actor(credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme)) -> AdminActor:
    """Resolve the admin making the request from a bearer token"""
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    if credentials is None or not credentials.credentials:
        raise credentials_exception

    payload = verify_token(credentials.credentials, credentials_exception)
    if not payload.get("is_admin"):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required"
        )

    return AdminActor(
        id=str(payload["sub"]),
        username=payload.get("username"),
        role=payload.get("role"),
    )

def get_current_customer(x_telegram_init_data: Optional[str] = Header(None)) -> CustomerIdentity:
    """Resolve the Telegram customer from signed Mini App init data"""
    try:
        user = verify_init_data(
            x_telegram_init_data or "",
            settings.TELEGRAM_BOT_TOKEN or "",
            max_age_seconds=settings.TELEGRAM_MINIAPP_MAX_AGE_SEC,
        )
    except InitDataError as e:
        logger.info("Rejected Mini App request: %s", e)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid Telegram Mini App session"
        )

    return CustomerIdentity(
        telegram_user_id=int(user["id"]),
        first_name=user.get("first_name"),
        last_name=user.get("last_name"),
        username=user.get("username"),
    )
