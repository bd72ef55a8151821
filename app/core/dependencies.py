from fastapi import Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt

from app.core.config import settings
from app.core.context import ApplicationContext
from app.modules.subscription.service import SubscriptionLifecycleService

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/token")


def get_context(request: Request) -> ApplicationContext:
    context = getattr(request.app.state, "context", None)
    if context is None:
        raise RuntimeError("Application context not initialised.")
    return context


def get_subscription_service(context: ApplicationContext = Depends(get_context)) -> SubscriptionLifecycleService:
    return context.subscriptions


# --- User Authentication Dependencies ---

async def get_current_user_id(token: str = Depends(oauth2_scheme)) -> str:
    """
    Dependency to get the current user id from a JWT token.
    Users live in another service; the token's ``sub`` claim is trusted as the user id.
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    except JWTError:
        raise credentials_exception

    user_id = payload.get("sub")
    if user_id is None:
        raise credentials_exception
    return str(user_id)
