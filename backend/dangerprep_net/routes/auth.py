from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Response
from pydantic import BaseModel

from ..security.auth import check_token, clear_session, create_session, require_auth


router = APIRouter()


class LoginRequest(BaseModel):
    token: str


@router.get("/state")
async def state(user: str = Depends(require_auth)) -> dict:
    return {"authenticated": True, "user": user}


@router.post("/login")
async def login(req: LoginRequest, response: Response) -> dict:
    if not check_token(req.token):
        raise HTTPException(status_code=401, detail="Invalid token")
    create_session(response)
    return {"ok": True}


@router.post("/logout")
async def logout(response: Response) -> dict:
    clear_session(response)
    return {"ok": True}
