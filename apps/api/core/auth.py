"""
Authentication dependencies.

Resolves the bearer session to a user id. Profiles are created on first
profile-touching action, so authentication never requires a profile row.
"""
from fastapi import Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from typing import Optional
from uuid import UUID

from core.exceptions import UnauthorizedError
from core.security import decode_access_token

# Use auto_error=False to handle missing credentials manually and return 401 (not 403)
security = HTTPBearer(auto_error=False)


def get_current_user_id(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> UUID:
    """
    Get the current authenticated user id from the JWT.

    Raises UnauthorizedError if the token is missing, invalid or malformed.
    """
    if not credentials:
        raise UnauthorizedError("Not authenticated")

    payload = decode_access_token(credentials.credentials)
    if not payload:
        raise UnauthorizedError("Invalid authentication credentials")

    user_id = payload.get("sub")
    if not user_id:
        raise UnauthorizedError("Invalid token payload")

    try:
        return UUID(str(user_id))
    except ValueError:
        raise UnauthorizedError("Invalid user ID format")
