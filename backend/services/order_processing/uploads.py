from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Optional, Tuple

from assets import normalize_extension
from errors import (
    DiskError,
    LoadError,
    OrderProcessingError,
    ParsingError,
    UnsupportedFormatError,
)
from schemas import Asset
from transfers import TransferEvent

from .constants import UPLOAD_REFERENCE_PREFIX, identifier_from, reference_for

if TYPE_CHECKING:
    from services.order_processing_service import OrderProcessingEngine

logger = logging.getLogger("photobook-orders")


def _write_scratch_file(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)


class AssetUploadCoordinator:
    def __init__(
        self,
        engine: "OrderProcessingEngine",
        asset_loader,
        transfers,
        scratch_dir: Path,
    ) -> None:
        self._engine = engine
        self._loader = asset_loader
        self._transfers = transfers
        self.scratch_dir = Path(scratch_dir)

    async def upload_assets(self) -> int:
        """Dispatch every asset still missing an upload url. Returns the count dispatched."""
        order = self._engine.processing_order
        if order is None:
            return 0
        in_flight = set(self._transfers.references().values())
        assets = [
            asset
            for asset in order.assets_to_upload()
            if reference_for(asset.identifier) not in in_flight
        ]
        if not assets:
            return 0
        logger.info(
            "Uploading %s asset(s), %s remaining in order",
            len(assets),
            len(order.remaining_assets_to_upload()),
        )
        await asyncio.gather(*(self._dispatch(asset) for asset in assets))
        return len(assets)

    async def _dispatch(self, asset: Asset) -> None:
        if self._engine.cancellation.is_pending:
            return
        try:
            await self.upload_asset(asset)
        except OrderProcessingError as exc:
            logger.warning("Upload of asset %s failed: %s", asset.identifier, exc)
            await self._engine.handle_upload_failure(exc)

    async def _image_data(self, asset: Asset) -> Tuple[bytes, str]:
        try:
            data, extension = await self._loader.image_data(asset)
        except OrderProcessingError:
            raise
        except Exception as exc:
            raise LoadError(f"Asset {asset.identifier}: {exc}") from exc
        if not data:
            raise LoadError(f"Asset {asset.identifier} produced no data")
        normalized = normalize_extension(extension or "")
        if normalized is None:
            raise UnsupportedFormatError(f"Asset {asset.identifier} has format {extension!r}")
        return data, normalized

    async def upload_asset(self, asset: Asset) -> Optional[int]:
        data, extension = await self._image_data(asset)
        path = self.scratch_dir / f"{asset.file_identifier}.{extension}"
        try:
            await asyncio.to_thread(_write_scratch_file, path, data)
        except OSError as exc:
            raise DiskError(f"Could not save {path.name}: {exc}") from exc
        # Loading can outlive a cancellation; never start a transfer after one.
        if self._engine.processing_order is None or self._engine.cancellation.is_pending:
            logger.info("Skipping upload of asset %s: order is no longer processing", asset.identifier)
            return None
        try:
            return await self._transfers.upload(path, reference_for(asset.identifier))
        except OSError as exc:
            raise DiskError(f"Could not record upload of {path.name}: {exc}") from exc

    async def on_transfer_completed(self, event: TransferEvent) -> None:
        reference = event.reference
        if reference is not None and not reference.startswith(UPLOAD_REFERENCE_PREFIX):
            return
        engine = self._engine
        if engine.processing_order is None or engine.cancellation.is_pending:
            logger.info("Ignoring upload task %s: no order is processing", event.task_id)
            return
        if event.error is not None:
            await engine.handle_upload_failure(event.error)
            return
        url = event.response.get("full")
        if reference is None or not url:
            await engine.handle_upload_failure(
                ParsingError(f"Upload task {event.task_id} returned no reference or url")
            )
            return

        identifier = identifier_from(reference)
        async with engine.lock:
            order = engine.processing_order
            if order is None or engine.cancellation.is_pending:
                return
            known = [asset for asset in order.all_assets() if asset.identifier == identifier]
            matching = [asset for asset in known if asset.upload_url is None]
            for asset in matching:
                asset.upload_url = str(url)
            if matching:
                await engine.save_processing_order()
            finished = bool(matching) and not order.remaining_assets_to_upload()

        if not known:
            await engine.handle_upload_failure(
                LoadError(f"Uploaded asset {identifier} is not part of the order")
            )
            return
        if not matching:
            logger.info("Asset %s was already uploaded", identifier)
            return
        engine.notify_upload_status()
        if finished:
            logger.info("All assets uploaded")
            await engine.finish_order()
