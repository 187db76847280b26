"""Read-only match endpoints."""

from fastapi import APIRouter, HTTPException, Request

from livesync.security import READ_RATE_LIMIT, limiter

router = APIRouter(prefix="/matches", tags=["matches"])


def _queries(request: Request):
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(status_code=503, detail="Service not ready")
    return services.queries


@router.get("/{external_id}")
@limiter.limit(READ_RATE_LIMIT)
async def get_match(external_id: str, request: Request):
    """Consolidated match view from the store only."""
    view = await _queries(request).get_match_view(external_id)
    if view is None:
        raise HTTPException(status_code=404, detail="Match not found")
    return view


@router.get("/{external_id}/detail")
@limiter.limit(READ_RATE_LIMIT)
async def get_match_detail(external_id: str, request: Request):
    """Match view plus reference, live and pre-match sections; partial past the read deadline."""
    view = await _queries(request).get_match_detail(external_id)
    if view is None:
        raise HTTPException(status_code=404, detail="Match not found")
    return view
