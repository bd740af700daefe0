from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import or_
from sqlalchemy.orm import Session
from app.db.session import get_db
from app.schemas.auth import LoginRequest, Token
from app.models.user import Account
from app.core.security import verify_password, create_access_token
from app.api.deps import get_current_user

router = APIRouter(tags=["auth"])

@router.post("/auth/login", response_model=Token)
def login(body: LoginRequest, db: Session = Depends(get_db)):
    ident = body.login.strip().lower()
    user = db.query(Account).filter(or_(Account.email == ident, Account.username == ident)).first()
    if not user or not user.is_active:
        raise HTTPException(status_code=401, detail="Invalid credentials")
    if not verify_password(body.password, user.password_hash):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    return Token(access_token=create_access_token(user.id, role=user.role), role=user.role)


@router.get("/auth/me")
def me(me: Account = Depends(get_current_user)):
    """Return current user info including role."""
    return {
        "id": me.id,
        "username": me.username,
        "email": me.email,
        "fullName": me.full_name or "",
        "role": me.role,
    }
