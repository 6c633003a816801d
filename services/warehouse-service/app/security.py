import os
from typing import Annotated, Optional

import jwt
from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from .tenancy import get_company_id

bearer = HTTPBearer(auto_error=False)

JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret-change-me")
JWT_ALG = "HS256"

# Roles that act on behalf of a single warehouse-owning company.
COMPANY_SCOPED_ROLES = {"warehouse_owner", "warehouse_staff"}


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALG])
    except jwt.PyJWTError as e:
        raise HTTPException(status_code=401, detail=f"Invalid token: {e}")


def get_principal(
    creds: Annotated[Optional[HTTPAuthorizationCredentials], Depends(bearer)],
) -> dict:
    if creds is None:
        raise HTTPException(status_code=401, detail="Missing bearer token")
    return decode_token(creds.credentials)


def get_principal_optional(
    creds: Annotated[Optional[HTTPAuthorizationCredentials], Depends(bearer)],
) -> Optional[dict]:
    # Marketplace browsing (availability, quotes) is open to anonymous visitors.
    if creds is None:
        return None
    return decode_token(creds.credentials)


def require_roles(*allowed_roles: str):
    allowed = set(allowed_roles)

    def _dep(
        principal: Annotated[dict, Depends(get_principal)],
        company_id: Annotated[str, Depends(get_company_id)],
    ) -> dict:
        role = principal.get("role")
        if role not in allowed:
            raise HTTPException(status_code=403, detail="Forbidden")
        if role in COMPANY_SCOPED_ROLES and principal.get("company_id") != company_id:
            raise HTTPException(status_code=403, detail="Forbidden for this company")
        return principal

    return _dep
