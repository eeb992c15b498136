from fastapi import APIRouter, Depends, HTTPException

from app.auth import check_demo_password, create_access_token, require_authenticated_user
from app.models import AuthLoginRequest, AuthLoginResponse, AuthMeResponse
from app.services.request_store import RequestStoreError, request_store

router = APIRouter(prefix="/auth", tags=["auth"])


@router.post("/login", response_model=AuthLoginResponse)
def login(payload: AuthLoginRequest):
    user_id = payload.user_id.strip()
    if not user_id:
        raise HTTPException(status_code=400, detail="user_id is required")
    if not check_demo_password(payload.password):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    try:
        profile = request_store.ensure_profile(user_id, full_name=payload.full_name, phone=payload.phone)
    except RequestStoreError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    token, expires_at = create_access_token(user_id=user_id)
    return AuthLoginResponse(access_token=token, user_id=user_id, role=profile.role, expires_at=expires_at)


@router.get("/me", response_model=AuthMeResponse)
def me(user_id: str = Depends(require_authenticated_user)):
    profile = request_store.get_profile(user_id)
    return AuthMeResponse(user_id=user_id, role=profile.role if profile else None)
