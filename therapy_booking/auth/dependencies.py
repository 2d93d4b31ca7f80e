from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jwt import PyJWTError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from therapy_booking.auth import jwt_handler
from therapy_booking.models.user import User
from therapy_booking.routes.dependencies import database_unavailable, get_db

security = HTTPBearer()


def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: Session = Depends(get_db),
) -> User:
    token = credentials.credentials
    try:
        payload = jwt_handler.decode_access_token(token)
    except PyJWTError as exc:
        raise HTTPException(status_code=401, detail="Invalid token") from exc

    email = payload.get("sub")
    if not email:
        raise HTTPException(status_code=401, detail="Invalid token subject")

    try:
        user = db.query(User).filter(User.email == email).first()
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc
    if user is None:
        raise HTTPException(status_code=401, detail="User not found")
    return user
