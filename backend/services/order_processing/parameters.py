from typing import Any, Dict, List

from errors import ParameterError
from schemas import DeliveryDetails, Order, Product


def _address_parameters(details: DeliveryDetails) -> Dict[str, Any]:
    address = details.address
    recipient = " ".join(part for part in (details.first_name, details.last_name) if part)
    return {
        "recipient_name": recipient,
        "address_line_1": address.line1,
        "address_line_2": address.line2 or "",
        "city": address.city,
        "county_state": address.state_or_county or "",
        "postcode": address.zip_or_postcode,
        "country_code": address.country_code,
    }


def _job_parameters(product: Product) -> Dict[str, Any]:
    template_id = product.upsold_template_id or product.template_id
    if not template_id:
        raise ParameterError("Product has no template")
    photo_urls: List[str] = []
    for asset in product.assets:
        if not asset.upload_url:
            raise ParameterError(f"Asset {asset.identifier} has not been uploaded")
        photo_urls.append(asset.upload_url)
    return {
        "template_id": template_id,
        "multiples": product.item_count,
        "pdf_urls": list(product.artifact_urls),
        "photo_urls": photo_urls,
    }


def build_order_parameters(order: Order) -> Dict[str, Any]:
    details = order.delivery_details
    if details is None or details.address is None or not details.address.is_valid:
        raise ParameterError("Delivery details are missing or incomplete")
    if not order.is_free:
        if order.payment_method is None:
            raise ParameterError("Payment method is missing")
        if not order.payment_token:
            raise ParameterError("Payment token is missing")
    if not order.products:
        raise ParameterError("Order has no products")

    params: Dict[str, Any] = {
        "proof_of_payment": order.payment_token,
        "payment_method": order.payment_method.value if order.payment_method else None,
        "promo_code": order.promo_code,
        "shipping_method": order.shipping_method,
        "customer_email": details.email,
        "customer_phone": details.phone,
        "shipping_address": _address_parameters(details),
        "jobs": [_job_parameters(product) for product in order.products],
    }
    return {key: value for key, value in params.items() if value is not None}
