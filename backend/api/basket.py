from fastapi import APIRouter, Depends

from schemas import Order
from services.basket_service import BasketService

from .dependencies import get_basket_service

router = APIRouter(prefix="/api/basket", tags=["basket"])


@router.get("", response_model=Order)
async def read_basket(basket: BasketService = Depends(get_basket_service)) -> Order:
    return basket.load()


@router.put("", response_model=Order)
async def update_basket(
    payload: Order,
    basket: BasketService = Depends(get_basket_service),
) -> Order:
    # Order ids are only ever assigned to the processing copy.
    payload.order_id = None
    return basket.save(payload)


@router.post("/reset", response_model=Order)
async def reset_basket(basket: BasketService = Depends(get_basket_service)) -> Order:
    return basket.reset()
