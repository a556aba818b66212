from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

DEFAULT_CURRENCY = "GBP"


class Price(BaseModel):
    currency: str = DEFAULT_CURRENCY
    amount: Decimal = Decimal("0")


class LineItem(BaseModel):
    name: str
    price: Price


class Cost(BaseModel):
    line_items: List[LineItem] = []
    total_shipping_price: Price = Field(default_factory=Price)
    promo_discount: Optional[Price] = None
    promo_code_invalid_reason: Optional[str] = None
    total: Price = Field(default_factory=Price)


class Address(BaseModel):
    line1: Optional[str] = None
    line2: Optional[str] = None
    city: Optional[str] = None
    state_or_county: Optional[str] = None
    zip_or_postcode: Optional[str] = None
    country_code: Optional[str] = None

    @property
    def is_valid(self) -> bool:
        required = (self.line1, self.city, self.zip_or_postcode, self.country_code)
        return all(value and value.strip() for value in required)


class DeliveryDetails(BaseModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[Address] = None


class PaymentMethod(str, Enum):
    CREDIT_CARD = "credit_card"
    APPLE_PAY = "apple_pay"
    PAYPAL = "paypal"


class Asset(BaseModel):
    identifier: str
    file_identifier: str
    local_path: Optional[str] = None
    remote_url: Optional[str] = None
    upload_url: Optional[str] = None


class Product(BaseModel):
    template_id: str
    assets: List[Asset] = []
    item_count: int = Field(default=1, ge=1, le=10)
    upsold_template_id: Optional[str] = None
    artifact_urls: List[str] = []


class Order(BaseModel):
    products: List[Product] = []
    delivery_details: Optional[DeliveryDetails] = None
    payment_method: Optional[PaymentMethod] = None
    promo_code: Optional[str] = None
    payment_token: Optional[str] = None
    shipping_method: Optional[str] = None
    order_id: Optional[str] = None
    cost: Optional[Cost] = None
    last_submission_date: Optional[datetime] = None

    # Mutators that change pricing drop the cached cost snapshot.

    def add_product(self, product: Product) -> None:
        self.products.append(product)
        self.cost = None

    def remove_product(self, index: int) -> Product:
        product = self.products.pop(index)
        self.cost = None
        return product

    def set_item_count(self, index: int, value: int) -> None:
        if not 1 <= value <= 10:
            raise ValueError("item_count must be between 1 and 10")
        self.products[index].item_count = value
        self.cost = None

    def set_promo_code(self, promo_code: Optional[str]) -> None:
        self.promo_code = promo_code or None
        self.cost = None

    def set_shipping_method(self, shipping_method: Optional[str]) -> None:
        self.shipping_method = shipping_method
        self.cost = None

    @property
    def is_free(self) -> bool:
        return self.cost is not None and self.cost.total.amount == 0

    def all_assets(self) -> List[Asset]:
        return [asset for product in self.products for asset in product.assets]

    def remaining_assets_to_upload(self) -> List[Asset]:
        return [asset for asset in self.all_assets() if asset.upload_url is None]

    def assets_to_upload(self) -> List[Asset]:
        seen: set[str] = set()
        unique: List[Asset] = []
        for asset in self.remaining_assets_to_upload():
            if asset.identifier in seen:
                continue
            seen.add(asset.identifier)
            unique.append(asset)
        return unique


class CheckoutRequest(BaseModel):
    payment_token: Optional[str] = Field(
        default=None, description="Opaque token from the payment authorization step"
    )


class ProcessingErrorResponse(BaseModel):
    kind: str
    message: str
    detail: str = ""
    recoverable: bool
    code: Optional[int] = None


class OrderProcessingStatusResponse(BaseModel):
    processing: bool
    cancelling: bool
    stage: Optional[str]
    order_id: Optional[str]
    total_assets: int
    remaining_assets: int
    pending_uploads: int
    finishing: bool
    last_completed_at: Optional[datetime]
    last_error: Optional[ProcessingErrorResponse]
