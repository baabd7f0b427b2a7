"""
Receipt Hook - Best-effort receipt generation after a successful grant.

Rendering and storing the receipt document is delegated to a receipt
service; this module only calls it and reports the stored document URL.
"""

from decimal import Decimal
from typing import Protocol

import httpx
from structlog import get_logger

from benefit_grant.exceptions import ReceiptHookError

logger = get_logger(__name__)


class ReceiptHook(Protocol):
    """
    Receipt hook protocol.

    Implementations must raise ReceiptHookError (or let any exception
    escape) on failure; the engine treats every failure as non-fatal.
    """

    async def generate_and_store_receipt(
        self,
        payment_ref: str,
        account_email: str | None,
        amount: Decimal,
        credits_granted: int,
        description: str,
    ) -> str:
        """
        Generate a receipt and store it.

        Returns:
            URL of the stored receipt
        """
        ...


class HttpReceiptHook:
    """Receipt hook backed by an HTTP receipt service."""

    RECEIPTS_PATH = "/v1/receipts"

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        if not base_url:
            raise ValueError("Receipt service URL required")
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._http_client = http_client

    @property
    def http_client(self) -> httpx.AsyncClient:
        """Get HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.timeout)
        return self._http_client

    async def generate_and_store_receipt(
        self,
        payment_ref: str,
        account_email: str | None,
        amount: Decimal,
        credits_granted: int,
        description: str,
    ) -> str:
        try:
            response = await self.http_client.post(
                f"{self.base_url}{self.RECEIPTS_PATH}",
                json={
                    "order_id": payment_ref,
                    "email": account_email,
                    "amount": str(amount),
                    "credits": credits_granted,
                    "description": description,
                },
            )
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            logger.error(
                "receipt_service_rejected",
                payment_ref=payment_ref,
                status=e.response.status_code,
                text=e.response.text[:500],
            )
            raise ReceiptHookError(payment_ref, f"HTTP {e.response.status_code}") from e
        except httpx.HTTPError as e:
            raise ReceiptHookError(payment_ref, f"{type(e).__name__}: {e}") from e
        except ValueError as e:
            raise ReceiptHookError(payment_ref, "Invalid JSON from receipt service") from e

        url = data.get("url") if isinstance(data, dict) else None
        if not url:
            raise ReceiptHookError(payment_ref, "Receipt service returned no URL")
        return str(url)

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None
