from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Request

from backend.app.api.routes.scrape import require_worker_token
from backend.app.db import models

router = APIRouter()


@router.get("/{search_id}/progress", dependencies=[Depends(require_worker_token)])
async def search_progress(search_id: UUID, request: Request):
    """Progress columns of a saved search, for dashboards polling a running scrape."""
    with request.app.state.database.session_scope() as session:
        search = session.get(models.SavedSearch, search_id)
        if search is None:
            raise HTTPException(status_code=404, detail="Search not found")
        return {
            "searchId": str(search.id),
            "status": search.scrape_status,
            "step": search.scrape_step,
            "totalSteps": search.scrape_total_steps,
            "currentSite": search.scrape_current_site,
            "lastScrapedAt": search.last_scraped_at.isoformat() if search.last_scraped_at else None,
        }
