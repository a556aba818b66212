import logging
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api import basket_router, order_processing_router
from assets import LocalAssetLoader
from commerce import CommerceClient
from config import Settings, settings
from photobook_api import PdfGenerationClient
from repositories.order_repository import OrderRepository
from repositories.task_reference_repository import TaskReferenceRepository
from services.basket_service import BasketService
from services.order_processing_service import OrderProcessingEngine, ProcessingStatusTracker
from transfers import BackgroundTransferSession

logger = logging.getLogger("photobook-orders")


def build_engine(
    config: Settings,
    *,
    delegate: Optional[ProcessingStatusTracker] = None,
    transfers=None,
    asset_loader=None,
    artifact_generator=None,
    commerce=None,
) -> OrderProcessingEngine:
    store = OrderRepository(config.data_dir)
    if transfers is None:
        transfers = BackgroundTransferSession(
            config.upload_url,
            TaskReferenceRepository(config.data_dir),
            timeout=config.http_timeout_seconds,
        )
    return OrderProcessingEngine(
        store,
        transfers,
        asset_loader or LocalAssetLoader(timeout=config.http_timeout_seconds),
        artifact_generator or PdfGenerationClient(config.photobook_api_url),
        commerce
        or CommerceClient(
            config.commerce_api_url,
            config.commerce_api_key,
            timeout=config.http_timeout_seconds,
        ),
        scratch_dir=config.scratch_dir,
        delegate=delegate,
        poll_interval=config.order_poll_interval_seconds,
        max_polls=config.order_max_polls,
    )


def create_app(
    config: Settings = settings,
    *,
    transfers=None,
    asset_loader=None,
    artifact_generator=None,
    commerce=None,
) -> FastAPI:
    app = FastAPI(title="Photobook Orders API")

    basket_service = BasketService(OrderRepository(config.data_dir))
    tracker = ProcessingStatusTracker(basket_service)
    engine = build_engine(
        config,
        delegate=tracker,
        transfers=transfers,
        asset_loader=asset_loader,
        artifact_generator=artifact_generator,
        commerce=commerce,
    )
    app.state.engine = engine
    app.state.basket_service = basket_service
    app.state.status_tracker = tracker

    allow_origins = ["*"] if config.allowed_origins == ["*"] else config.allowed_origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allow_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(basket_router)
    app.include_router(order_processing_router)

    @app.on_event("startup")
    async def _on_startup() -> None:
        if await engine.load_processing_order():
            logger.info("Resumed interrupted order processing: %s", engine.status())
        if allow_origins == ["*"]:
            logger.warning(
                "CORS is set to allow all origins with credentials; set ALLOWED_ORIGINS to explicit values for local dev."
            )

    @app.on_event("shutdown")
    async def _on_shutdown() -> None:
        engine.transfers.save_pending_tasks()
        await engine.transfers.aclose()

    return app


app = create_app()
