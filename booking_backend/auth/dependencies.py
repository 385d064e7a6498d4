import jwt
from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy import select
from sqlalchemy.orm import Session

from booking_backend.auth import jwt_handler
from booking_backend.database import get_db
from booking_backend.models.business import Business
from booking_backend.services.lifecycle import ActorContext

security = HTTPBearer()


def resolve_actor(db: Session, user_id: int, role: str) -> ActorContext:
    owned_business_id = db.execute(
        select(Business.id)
        .where(Business.owner_id == user_id, Business.is_active.is_(True))
        .order_by(Business.id)
    ).scalars().first()
    return ActorContext(actor_id=user_id, actor_role=role, owned_business_id=owned_business_id)


def get_actor_context(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: Session = Depends(get_db),
) -> ActorContext:
    token = credentials.credentials
    try:
        payload = jwt_handler.decode_access_token(token)
    except jwt.PyJWTError as exc:
        raise HTTPException(status_code=401, detail="Invalid token") from exc

    subject = payload.get("sub")
    if not subject or not str(subject).isdigit():
        raise HTTPException(status_code=401, detail="Invalid token subject")

    return resolve_actor(db, int(subject), payload.get("role") or "customer")
