import json
import logging
import os
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from schemas import Order

logger = logging.getLogger("photobook-orders")

STORAGE_VERSION = 1


class OrderSlot(str, Enum):
    BASKET = "basket"
    PROCESSING = "processing"


SLOT_FILES = {
    OrderSlot.BASKET: "BasketOrder.json",
    OrderSlot.PROCESSING: "ProcessingOrder.json",
}


class OrderRepository:
    def __init__(self, directory: Path) -> None:
        self.directory = Path(directory)

    def path_for(self, slot: OrderSlot) -> Path:
        return self.directory / SLOT_FILES[slot]

    def load(self, slot: OrderSlot) -> Optional[Order]:
        path = self.path_for(slot)
        if not path.exists():
            return None
        try:
            envelope = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning("Unreadable %s order at %s: %s", slot.value, path, exc)
            return None
        if not isinstance(envelope, dict) or envelope.get("version") != STORAGE_VERSION:
            logger.warning("Unsupported %s order format at %s", slot.value, path)
            return None
        try:
            return Order.model_validate(envelope.get("order"))
        except ValidationError as exc:
            logger.warning("Decoding of %s order failed: %s", slot.value, exc)
            return None

    def save(self, order: Order, slot: OrderSlot) -> None:
        path = self.path_for(slot)
        envelope = {
            "version": STORAGE_VERSION,
            "saved_at": datetime.now(timezone.utc).isoformat(),
            "order": order.model_dump(mode="json"),
        }
        self.directory.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(".tmp")
        tmp_path.write_text(json.dumps(envelope), encoding="utf-8")
        os.replace(tmp_path, path)

    def clear(self, slot: OrderSlot) -> None:
        try:
            self.path_for(slot).unlink()
        except FileNotFoundError:
            return
