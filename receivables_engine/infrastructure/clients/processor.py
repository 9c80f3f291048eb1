"""Payment processor HTTP client for submitting ACH batches"""

import httpx
from typing import Any, Dict
from receivables_engine.domain.models import BatchPayload
from receivables_engine.domain.exceptions import GatewaySubmissionError
from receivables_engine.config import settings
from receivables_engine.infrastructure.observability.metrics import gateway_latency_histogram


def payload_to_json(payload: BatchPayload) -> Dict[str, Any]:
    """Processor request body; file formatting is the processor's concern"""
    return {
        "batch_id": payload.batch_id,
        "payor_id": payload.payor_id,
        "effective_date": payload.effective_date.isoformat(),
        "total_cents": payload.total_cents,
        "payment_count": payload.payment_count,
        "payments": [
            {
                "payment_id": line.payment_id,
                "invoice_id": line.invoice_id,
                "amount_cents": line.amount_cents,
                "bank_account_ref": line.bank_account_ref,
            }
            for line in payload.lines
        ],
    }


class PaymentProcessorClient:
    """Client for the external payment processor's batch API"""

    def __init__(self, base_url: str | None = None, timeout: float | None = None):
        self.base_url = base_url or settings.processor_api_base
        self.timeout = timeout or settings.http_timeout_seconds

    async def submit_batch(self, payload: BatchPayload) -> str:
        """
        Submit a closed batch and return the processor's batch reference.

        The batch id is sent as the idempotency key, so re-submitting a batch
        whose first response was lost cannot create a second ACH file.

        Raises:
            GatewaySubmissionError: On timeout, HTTP errors, or invalid response
        """
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            try:
                with gateway_latency_histogram.time():
                    response = await client.post(
                        f"{self.base_url}/ach/batches",
                        json=payload_to_json(payload),
                        headers={"Idempotency-Key": payload.batch_id},
                    )
                response.raise_for_status()
                data = response.json()

                reference = data["batch_reference"]
                if not isinstance(reference, str) or not reference:
                    raise ValueError("empty batch_reference")
                return reference

            except httpx.TimeoutException as e:
                raise GatewaySubmissionError(f"Processor timeout after {self.timeout}s") from e
            except httpx.HTTPStatusError as e:
                raise GatewaySubmissionError(f"Processor error: {e.response.status_code}") from e
            except httpx.RequestError as e:
                raise GatewaySubmissionError(f"Processor unreachable: {e}") from e
            except (KeyError, ValueError, TypeError) as e:
                raise GatewaySubmissionError(f"Invalid response from processor: {e}") from e
