import logging
from typing import Any, Dict, List, Optional

import httpx

from errors import ArtifactGenerationError
from schemas import Product

logger = logging.getLogger("photobook-orders")

PDF_ENDPOINT = "/api/print"


def _product_payload(product: Product) -> Dict[str, Any]:
    return {
        "template_id": product.upsold_template_id or product.template_id,
        "pages": [
            {"identifier": asset.identifier, "url": asset.upload_url}
            for asset in product.assets
        ],
    }


def _extract_urls(data: Any) -> List[str]:
    if not isinstance(data, dict):
        return []
    urls = [data.get("coverUrl"), data.get("insideUrl")]
    return [str(url) for url in urls if url]


class PdfGenerationClient:
    """Asks the photobook builder for the print-ready PDFs of one product."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport

    async def generate(self, product: Product) -> List[str]:
        payload = _product_payload(product)
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.post(f"{self.base_url}{PDF_ENDPOINT}", json=payload)
        except httpx.HTTPError as exc:
            raise ArtifactGenerationError(str(exc)) from exc
        if response.status_code != 200:
            raise ArtifactGenerationError(
                f"PDF generation failed with status {response.status_code}"
            )
        try:
            urls = _extract_urls(response.json())
        except ValueError as exc:
            raise ArtifactGenerationError("PDF generation response is not JSON") from exc
        if not urls:
            raise ArtifactGenerationError("PDF generation returned no URLs")
        logger.info("Generated %s PDF(s) for template %s", len(urls), payload["template_id"])
        return urls
