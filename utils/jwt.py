from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from fastapi import Depends, HTTPException
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import jwt, JWTError

from app.config import JWT_SECRET, JWT_ALGORITHM, JWT_EXPIRE_MINUTES

security = HTTPBearer()

FARMER = "Farmer"
ADMIN = "Admin"


@dataclass(frozen=True)
class Actor:
    """Whoever performs a mutation. Passed explicitly into every service call."""
    id: str
    role: str
    name: str = ""

    @property
    def is_admin(self) -> bool:
        return self.role == ADMIN


# =========================
# TOKEN CREATE
# =========================

def create_token(data: dict):
    payload = data.copy()
    payload["exp"] = datetime.now(timezone.utc) + timedelta(minutes=JWT_EXPIRE_MINUTES)
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)

# =========================
# TOKEN DECODE (LOW LEVEL)
# =========================

def decode_token(token: str):
    return jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])

# =========================
# FASTAPI DEPENDENCIES
# =========================

def verify_token(
    credentials: HTTPAuthorizationCredentials = Depends(security)
):
    token = credentials.credentials

    try:
        payload = decode_token(token)
        return payload   # {id, role, name, exp}
    except JWTError:
        raise HTTPException(
            status_code=401,
            detail="Invalid or expired token"
        )


def current_actor(user=Depends(verify_token)) -> Actor:
    if not user.get("id") or not user.get("role"):
        raise HTTPException(status_code=401, detail="Token has no subject")
    return Actor(id=str(user["id"]), role=user["role"], name=user.get("name", ""))


def require_role(*roles: str):
    def dependency(actor: Actor = Depends(current_actor)) -> Actor:
        if actor.role not in roles:
            raise HTTPException(status_code=403, detail=f"{' / '.join(roles)} only")
        return actor
    return dependency
