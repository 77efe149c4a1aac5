import hmac
from typing import Optional

from fastapi import Header, HTTPException, Request

from webhook_automation.common.config import EngineConfig
from webhook_automation.worker.engine import Engine


def get_config(request: Request) -> EngineConfig:
    return request.app.state.config


def get_engine(request: Request) -> Engine:
    return request.app.state.engine


def _extract_bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization or not authorization.startswith("Bearer "):
        return None
    return authorization[7:].strip() or None


async def require_api_token(
    request: Request,
    authorization: Optional[str] = Header(default=None),
) -> str:
    """Reject the request with 401 unless it carries a configured bearer token."""
    token = _extract_bearer_token(authorization)
    tokens = get_config(request).auth.api_tokens
    if not token or not any(
        hmac.compare_digest(token.encode(), known.encode()) for known in tokens
    ):
        raise HTTPException(
            status_code=401,
            detail="Invalid or missing API token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return token
