from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, status

from schemas import CheckoutRequest, OrderProcessingStatusResponse
from services.basket_service import BasketService
from services.order_processing_service import OrderProcessingEngine, ProcessingStatusTracker

from .dependencies import get_basket_service, get_engine, get_status_tracker

router = APIRouter(prefix="/api/order-processing", tags=["order-processing"])


def _status(
    engine: OrderProcessingEngine, tracker: ProcessingStatusTracker
) -> OrderProcessingStatusResponse:
    return OrderProcessingStatusResponse(**engine.status(), **tracker.get_status())


@router.get("/status", response_model=OrderProcessingStatusResponse)
async def get_status(
    engine: OrderProcessingEngine = Depends(get_engine),
    tracker: ProcessingStatusTracker = Depends(get_status_tracker),
) -> OrderProcessingStatusResponse:
    return _status(engine, tracker)


@router.post(
    "/start",
    response_model=OrderProcessingStatusResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def start_processing(
    payload: CheckoutRequest,
    background_tasks: BackgroundTasks,
    engine: OrderProcessingEngine = Depends(get_engine),
    basket: BasketService = Depends(get_basket_service),
    tracker: ProcessingStatusTracker = Depends(get_status_tracker),
) -> OrderProcessingStatusResponse:
    if engine.is_processing_order:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="An order is already being processed",
        )
    if not basket.load().products:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Basket is empty",
        )
    order = basket.checkout_copy(payload.payment_token)
    tracker.order_did_start()
    background_tasks.add_task(engine.start_processing, order)
    return _status(engine, tracker)


@router.post(
    "/retry",
    response_model=OrderProcessingStatusResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def retry_processing(
    background_tasks: BackgroundTasks,
    engine: OrderProcessingEngine = Depends(get_engine),
    tracker: ProcessingStatusTracker = Depends(get_status_tracker),
) -> OrderProcessingStatusResponse:
    if not engine.is_processing_order:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="No order is being processed",
        )
    if engine.cancellation.is_pending:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Order is being cancelled",
        )
    tracker.order_did_start()
    background_tasks.add_task(engine.retry)
    return _status(engine, tracker)


@router.post("/cancel", response_model=OrderProcessingStatusResponse)
async def cancel_processing(
    engine: OrderProcessingEngine = Depends(get_engine),
    tracker: ProcessingStatusTracker = Depends(get_status_tracker),
) -> OrderProcessingStatusResponse:
    await engine.cancel_processing()
    return _status(engine, tracker)
