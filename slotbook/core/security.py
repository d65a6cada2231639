import uuid
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import jwt, JWTError
from pydantic import BaseModel
from slotbook.core.config import settings

http_bearer = HTTPBearer(auto_error=False)

# Clinic roles and the scopes they carry on top of any explicit token scopes
ROLE_SCOPES: dict[str, set[str]] = {
    "admin": {"*"},
    "doctor": {"slots:read", "slots:write", "bookings:read", "bookings:write", "requests:write", "requests:resolve"},
    "receptionist": {"slots:read", "bookings:read", "bookings:write", "requests:write", "requests:resolve"},
    "patient": {"slots:read", "requests:write"},
    "service": {"reconcile:write", "bookings:read"},
}

class Principal(BaseModel):
    user_id: uuid.UUID
    org_id: uuid.UUID
    provider_id: uuid.UUID | None = None  # set when the caller is a doctor
    roles: list[str] = []
    scopes: list[str] = []

    def granted(self) -> set[str]:
        out = set(self.scopes)
        for role in self.roles:
            out |= ROLE_SCOPES.get(role, set())
        return out

def _decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALG], audience=settings.REQUIRED_AUDIENCE)
    except JWTError as e:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=f"Invalid token: {e}")

async def get_principal(creds: HTTPAuthorizationCredentials | None = Depends(http_bearer)) -> Principal:
    # local/test run without a token as an admin of the default clinic
    if creds is None and settings.ENV in ("local", "test"):
        return Principal(user_id=uuid.uuid4(), org_id=uuid.UUID(settings.DEFAULT_ORG_ID), roles=["admin"])
    if creds is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing token")

    data = _decode_token(creds.credentials)
    subject = data.get("sub") or data.get("user_id")
    if not subject:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token has no subject")
    provider = data.get("provider_id")
    return Principal(
        user_id=uuid.UUID(str(subject)),
        org_id=uuid.UUID(str(data.get("org_id") or settings.DEFAULT_ORG_ID)),
        provider_id=uuid.UUID(str(provider)) if provider else None,
        roles=data.get("roles", []),
        scopes=data.get("scopes", []),
    )

def require_scopes(*needed: str):
    def dep(principal: Principal = Depends(get_principal)) -> Principal:
        granted = principal.granted()
        if "*" in granted:
            return principal
        missing = set(needed) - granted
        if missing:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Missing scopes: {', '.join(sorted(missing))}")
        return principal
    return dep
