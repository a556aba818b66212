from fastapi import Request

from services.basket_service import BasketService
from services.order_processing_service import OrderProcessingEngine, ProcessingStatusTracker


def get_engine(request: Request) -> OrderProcessingEngine:
    return request.app.state.engine


def get_basket_service(request: Request) -> BasketService:
    return request.app.state.basket_service


def get_status_tracker(request: Request) -> ProcessingStatusTracker:
    return request.app.state.status_tracker
