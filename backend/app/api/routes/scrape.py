import secrets
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status

router = APIRouter()


def require_worker_token(request: Request, authorization: Optional[str] = Header(default=None)) -> None:
    token = request.app.state.worker_token
    if not token:
        return
    expected = f"Bearer {token}"
    if not authorization or not secrets.compare_digest(authorization, expected):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")


@router.post("/trigger/{search_id}", status_code=status.HTTP_202_ACCEPTED, dependencies=[Depends(require_worker_token)])
async def trigger_search(search_id: UUID, request: Request):
    started = request.app.state.pool.submit(search_id)
    message = "Scrape started" if started else "Scrape already in progress"
    return {"message": message, "searchId": str(search_id)}


@router.post("/trigger-all", status_code=status.HTTP_202_ACCEPTED, dependencies=[Depends(require_worker_token)])
async def trigger_all(request: Request):
    request.app.state.pool.submit_all()
    return {"message": "Scrape of all active searches started"}
