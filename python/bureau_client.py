"""
Credit Bureau Data Client

HTTP client for the credit bureau data source. Every dataset is keyed by
the subject's tax identifier (RFC):

    /buro/{rfc}                   bureau summary (scoring input)
    /obligaciones/{rfc}/detalles  obligation details (scoring input)
    /pagos/pendientes/{rfc}       pending payments (scoring input)
    /pagos/estadisticas/{rfc}     credit summary statistics
    /pagos/{rfc}                  payment history, optionally per obligation

A 404 is reported as BureauDataNotFound so callers can treat it as an
empty default; network failures and 5xx responses are retried and then
raised as BureauUpstreamError.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import requests
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
    before_sleep_log
)

from config_manager import get_config, ConfigManager
from database.monitoring import record_bureau_request
from errors import UpstreamError
from text_utils import sanitize_for_logging

logger = logging.getLogger(__name__)


class BureauDataNotFound(Exception):
    """The bureau has no record of the requested dataset for this subject"""

    def __init__(self, dataset: str, tax_id: str):
        self.dataset = dataset
        self.tax_id = tax_id
        super().__init__(f"No {dataset} data for {tax_id}")


class BureauUpstreamError(UpstreamError):
    """Bureau unreachable, timed out, or answered with an error"""
    pass


class TransientBureauError(BureauUpstreamError):
    """Failure worth retrying (network error, timeout, 5xx)"""
    pass


@dataclass
class ScoringInputs:
    """The three datasets the scoring engine consumes"""
    summary: Optional[Dict[str, Any]]
    obligations: List[Dict[str, Any]] = field(default_factory=list)
    pending_payments: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def no_history(self) -> bool:
        return self.summary is None


class BureauClient:
    """Thin requests-based client for the bureau REST API"""

    def __init__(
        self,
        config: Optional[ConfigManager] = None,
        session: Optional[requests.Session] = None,
        wait_multiplier: float = 0.5
    ):
        """Initialize client

        Args:
            config: Configuration manager instance
            session: Pre-built requests session (for testing)
            wait_multiplier: Exponential backoff multiplier in seconds
        """
        self.config = config or get_config()
        bureau = self.config.bureau
        self.base_url = bureau.base_url.rstrip('/')
        self.timeout = bureau.timeout_seconds

        self.session = session or requests.Session()
        self.session.headers.update({
            'x-api-key': bureau.api_key,
            'Content-Type': 'application/json',
        })

        self._get = retry(
            stop=stop_after_attempt(bureau.max_retry_attempts),
            wait=wait_exponential(multiplier=wait_multiplier, max=5),
            retry=retry_if_exception_type(TransientBureauError),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True
        )(self._request)

    def _request(
        self,
        path: str,
        dataset: str,
        tax_id: str,
        params: Optional[Dict[str, Any]] = None
    ) -> Any:
        url = f"{self.base_url}{path}"
        try:
            response = self.session.get(url, params=params, timeout=self.timeout)
        except (requests.Timeout, requests.ConnectionError) as e:
            record_bureau_request(dataset, "network_error")
            raise TransientBureauError(f"Bureau request for {dataset} failed: {e}")
        except requests.RequestException as e:
            record_bureau_request(dataset, "error")
            raise BureauUpstreamError(f"Bureau request for {dataset} failed: {e}")

        if response.status_code == 404:
            record_bureau_request(dataset, "not_found")
            raise BureauDataNotFound(dataset, tax_id)
        if response.status_code >= 500:
            record_bureau_request(dataset, "server_error")
            raise TransientBureauError(
                f"Bureau returned {response.status_code} for {dataset}"
            )
        try:
            response.raise_for_status()
            data = response.json()
        except (requests.HTTPError, ValueError) as e:
            record_bureau_request(dataset, "error")
            raise BureauUpstreamError(f"Bad bureau response for {dataset}: {e}")

        record_bureau_request(dataset, "success")
        return data

    def get_bureau_summary(self, tax_id: str) -> Dict[str, Any]:
        return self._get(f"/buro/{tax_id}", "bureau_summary", tax_id)

    def get_obligation_details(self, tax_id: str) -> List[Dict[str, Any]]:
        return self._get(f"/obligaciones/{tax_id}/detalles", "obligations", tax_id) or []

    def get_pending_payments(self, tax_id: str) -> List[Dict[str, Any]]:
        return self._get(f"/pagos/pendientes/{tax_id}", "pending_payments", tax_id) or []

    def get_credit_summary(self, tax_id: str) -> Dict[str, Any]:
        return self._get(f"/pagos/estadisticas/{tax_id}", "credit_summary", tax_id)

    def get_payments(self, tax_id: str, obligation_id: Optional[int] = None) -> List[Dict[str, Any]]:
        params = {'obligacionId': obligation_id} if obligation_id is not None else None
        return self._get(f"/pagos/{tax_id}", "payments", tax_id, params=params) or []


def _collect(future, deadline: float, dataset: str):
    remaining = max(deadline - time.monotonic(), 0)
    try:
        return future.result(timeout=remaining)
    except FutureTimeoutError:
        future.cancel()
        raise BureauUpstreamError(f"Timed out waiting for {dataset}")


def fetch_scoring_inputs(
    client: BureauClient,
    tax_id: str,
    timeout: Optional[float] = None
) -> ScoringInputs:
    """Fetch summary, obligations and pending payments in parallel

    Not-found on obligations or pending payments yields an empty list;
    not-found on the summary yields summary=None (no credit history).
    Any other failure, including exceeding `timeout`, raises
    BureauUpstreamError without returning partial data.

    Args:
        client: Bureau client
        tax_id: Normalized subject RFC
        timeout: Overall deadline in seconds for the three fetches
    """
    timeout = timeout if timeout is not None else client.config.bureau.fetch_timeout_seconds
    deadline = time.monotonic() + timeout

    executor = ThreadPoolExecutor(max_workers=3, thread_name_prefix="bureau")
    try:
        summary_future = executor.submit(client.get_bureau_summary, tax_id)
        obligations_future = executor.submit(client.get_obligation_details, tax_id)
        payments_future = executor.submit(client.get_pending_payments, tax_id)

        try:
            summary = _collect(summary_future, deadline, "bureau_summary")
        except BureauDataNotFound:
            logger.info("No bureau record for %s", sanitize_for_logging(tax_id))
            summary = None

        try:
            obligations = _collect(obligations_future, deadline, "obligations")
        except BureauDataNotFound:
            obligations = []

        try:
            pending = _collect(payments_future, deadline, "pending_payments")
        except BureauDataNotFound:
            pending = []
    finally:
        executor.shutdown(wait=False, cancel_futures=True)

    return ScoringInputs(summary=summary, obligations=obligations, pending_payments=pending)


def fetch_full_history(
    client: BureauClient,
    tax_id: str,
    max_payments: int = 50
) -> Dict[str, Any]:
    """Fetch credit summary, obligations and payments, tolerating partial failure

    Each dataset falls back independently (summary -> None, lists -> []).
    """
    def guarded(func, default):
        try:
            return func(tax_id)
        except BureauDataNotFound:
            return default
        except BureauUpstreamError as e:
            logger.warning("Partial history fetch failed for %s: %s", sanitize_for_logging(tax_id), e)
            return default

    with ThreadPoolExecutor(max_workers=3, thread_name_prefix="bureau") as executor:
        summary_future = executor.submit(guarded, client.get_credit_summary, None)
        obligations_future = executor.submit(guarded, client.get_obligation_details, [])
        payments_future = executor.submit(guarded, client.get_payments, [])

        credit_summary = summary_future.result()
        obligations = obligations_future.result()
        payments = payments_future.result()

    return {
        'credit_summary': credit_summary,
        'obligations': obligations,
        'payments': payments[:max_payments],
    }
