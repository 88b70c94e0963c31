from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from otc_mirror.prices import PriceCache

router = APIRouter(prefix="/api/prices", tags=["prices"])


def get_price_cache(request: Request) -> PriceCache:
    return request.app.state.price_cache


@router.get("")
async def prices(cache: PriceCache = Depends(get_price_cache)) -> JSONResponse:
    data = await cache.get_prices()
    return JSONResponse(status_code=200, content={"success": True, "data": [p.model_dump() for p in data]})
