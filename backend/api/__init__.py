from .basket import router as basket_router
from .order_processing import router as order_processing_router

__all__ = [
    "basket_router",
    "order_processing_router",
]
