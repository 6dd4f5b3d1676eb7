from typing import Any, Callable, Dict

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from .config import ALGORITHM, SECRET_KEY
from .models import UserRole

security = HTTPBearer()

KNOWN_ROLES = {role.value for role in UserRole}


async def get_current_user_claims(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> Dict[str, Any]:
    """
    Decode a JWT bearer token and extract the caller's identity.

    Tokens are issued by the users service; this service only verifies
    them and trusts the embedded user id and role.

    Parameters
    ----------
    credentials : HTTPAuthorizationCredentials
        Authorization header parsed by FastAPI's HTTPBearer.

    Returns
    -------
    Dict[str, Any]
        A dictionary containing:
        - 'username' : str
        - 'user_id' : int
        - 'role' : str (student, staff or admin)

    Raises
    ------
    HTTPException
        If the token is invalid, expired, or lacks the required claims.
    """
    token = credentials.credentials

    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
        username = payload.get("sub")
        user_id = payload.get("user_id")
        role = payload.get("role")
        if username is None or user_id is None or role not in KNOWN_ROLES:
            raise credentials_exception
    except JWTError:
        raise credentials_exception

    return {"username": username, "user_id": int(user_id), "role": role}


def require_roles(*allowed_roles: str) -> Callable:
    """
    Build a dependency that enforces a set of allowed roles.

    Parameters
    ----------
    allowed_roles : str
        One or more role names that are permitted to access a route.

    Returns
    -------
    Callable
        A FastAPI dependency that checks the caller's role and raises
        HTTP 403 if access is not allowed.
    """

    async def dependency(claims: Dict[str, Any] = Depends(get_current_user_claims)) -> Dict[str, Any]:
        if claims["role"] not in allowed_roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Not enough permissions",
            )
        return claims

    return dependency
