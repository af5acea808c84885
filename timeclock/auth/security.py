import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session

from ..config import settings
from ..db import get_db
from ..models.models import Company, Worker


http_bearer = HTTPBearer(auto_error=False)

ADMIN_ROLES = {"admin", "owner"}
REVIEWER_ROLES = {"supervisor", "admin", "owner"}


def create_access_token(worker_id: str, ttl_seconds: Optional[int] = None, extra: Optional[dict] = None) -> str:
    """Issue a bearer token. Production tokens come from the auth service; this mirrors their claims."""
    now = datetime.now(tz=timezone.utc)
    payload = {
        "sub": str(worker_id),
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(seconds=ttl_seconds or settings.jwt_ttl_seconds)).timestamp()),
        "jti": str(uuid.uuid4()),
    }
    if extra:
        payload.update(extra)
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")


def get_current_user(
    creds: Optional[HTTPAuthorizationCredentials] = Depends(http_bearer),
    db: Session = Depends(get_db),
) -> Worker:
    if creds is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    payload = decode_token(creds.credentials)
    try:
        worker_uuid = uuid.UUID(str(payload.get("sub")))
    except ValueError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid subject")
    worker = db.query(Worker).filter(Worker.id == worker_uuid).first()
    if worker is None or not worker.is_active:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not active")
    company = db.get(Company, worker.company_id)
    if company is None or not company.is_active:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Company is not active")
    return worker


def require_roles(*allowed_roles: str):
    def _dep(user: Worker = Depends(get_current_user)):
        if (user.role or "").lower() not in allowed_roles:
            raise HTTPException(status_code=403, detail="Forbidden")
        return user

    return _dep


require_admin = require_roles(*ADMIN_ROLES)
require_reviewer = require_roles(*REVIEWER_ROLES)
