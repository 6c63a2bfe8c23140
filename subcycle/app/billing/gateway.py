"""Settlement gateway integrations."""
from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from datetime import datetime, timezone
from typing import Optional, Protocol
from uuid import uuid4

import httpx

from ..errors import SettlementError, SettlementTimeout
from .models import SettlementReference

logger = logging.getLogger(__name__)


class SettlementGateway(Protocol):
    """External ledger that moves funds from a payer to a payee."""

    def settle(self, payer_id: str, payee_id: str, amount: int) -> SettlementReference:
        """Transfer ``amount`` or raise :class:`SettlementError`."""


class TimeoutBoundGateway:
    """Bounds every ``settle`` call on the wrapped gateway by ``timeout`` seconds.

    The underlying call cannot be interrupted; on expiry the worker thread is
    abandoned and the attempt is reported as a :class:`SettlementTimeout`.
    Socket-level ``OSError``s count as settlement failures; anything else the
    wrapped gateway raises propagates unchanged.
    """

    def __init__(self, gateway: SettlementGateway, *, timeout: float, max_workers: int = 4) -> None:
        self._gateway = gateway
        self._timeout = timeout
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="settlement")

    def settle(self, payer_id: str, payee_id: str, amount: int) -> SettlementReference:
        future = self._executor.submit(self._gateway.settle, payer_id, payee_id, amount)
        try:
            return future.result(timeout=self._timeout)
        except FutureTimeout as exc:
            future.cancel()
            logger.warning(
                "Settlement call timed out after %ss payer=%s payee=%s amount=%s",
                self._timeout,
                payer_id,
                payee_id,
                amount,
            )
            raise SettlementTimeout(f"Settlement timed out after {self._timeout}s") from exc
        except OSError as exc:
            raise SettlementError(f"{type(exc).__name__}: {exc}") from exc

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)


class HttpSettlementGateway:
    """Ledger reached over HTTP; a 2xx JSON body must carry ``reference``."""

    def __init__(self, base_url: str, *, client: Optional[httpx.Client] = None, timeout: float = 30.0) -> None:
        self._owns_client = client is None
        self._client = client or httpx.Client(base_url=base_url.rstrip("/"), timeout=timeout)

    def settle(self, payer_id: str, payee_id: str, amount: int) -> SettlementReference:
        try:
            response = self._client.post(
                "/settlements",
                json={"payer": payer_id, "payee": payee_id, "amount": amount},
            )
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPStatusError as exc:
            raise SettlementError(
                f"Settlement declined with HTTP {exc.response.status_code}",
                detail={"status_code": exc.response.status_code},
            ) from exc
        except httpx.HTTPError as exc:
            raise SettlementError(f"Settlement transport error: {exc}") from exc
        except ValueError as exc:
            raise SettlementError("Settlement response was not valid JSON") from exc

        reference = payload.get("reference") if isinstance(payload, dict) else None
        if not reference:
            raise SettlementError("Settlement response missing reference")
        return SettlementReference(reference=str(reference))

    def close(self) -> None:
        if self._owns_client:
            self._client.close()


class SandboxSettlementGateway:
    """Gateway for local development that approves every transfer."""

    def settle(self, payer_id: str, payee_id: str, amount: int) -> SettlementReference:
        reference = f"sandbox_{uuid4().hex}"
        logger.info(
            "Sandbox settlement %s payer=%s payee=%s amount=%s",
            reference,
            payer_id,
            payee_id,
            amount,
        )
        return SettlementReference(reference=reference, settled_at=datetime.now(timezone.utc))


__all__ = [
    "HttpSettlementGateway",
    "SandboxSettlementGateway",
    "SettlementGateway",
    "TimeoutBoundGateway",
]
