from fastapi import Request, Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from models.bidding.engine import AuctionEngine
from utils import log

logger = log.get_logger(__name__)

security = HTTPBearer()

async def current_user_get(request: Request, token: HTTPAuthorizationCredentials = Depends(security)):
    if hasattr(request.app.state, "auth_client"):
        if payload := request.app.state.auth_client.decode_jwt(token.credentials):
            return payload
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")

    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="No auth_client")

def is_admin(user: dict) -> bool:
    roles = user.get("roles", [])
    if isinstance(roles, str):
        roles = [roles]
    return "admin" in roles

async def require_authenticated(user: dict = Depends(current_user_get)):
    """
    Dependency for endpoints that act on behalf of a user; the ``sub`` claim is the user id.
    """
    if not user.get("sub"):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token has no subject")
    return user

async def require_admin(user: dict = Depends(require_authenticated)):
    """
    Dependency to ensure the user has the 'admin' role.
    """
    if not is_admin(user):
        logger.warning(f"User {user.get('sub')} attempted admin access without 'admin' role. Roles: {user.get('roles', [])}")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin privileges required"
        )
    return user

def get_engine(request: Request) -> AuctionEngine:
    return request.app.state.engine
