"""
JSON-over-HTTP helper for REST payment providers, with retries for safe reads.

Only idempotent requests (GET) are retried; a POST that opens a transaction is
sent once and any doubt about its outcome is resolved later through verify().
"""

import time
from typing import Any, Dict, Optional, Tuple, cast

import requests
import structlog

from rental_core.errors import GatewayError

logger = structlog.get_logger(__name__)

MAX_RETRIES = 2
RETRY_DELAY = 0.5
DEFAULT_TIMEOUT = 5


def should_retry(res: Optional[requests.Response], err: Optional[Exception]) -> bool:
    """
    Determine whether the request should be retried based on response or error.

    Args:
        res (Optional[requests.Response]): Response object if available.
        err (Optional[Exception]): Exception raised by the request, if any.

    Returns:
        bool: True if the request should be retried, False otherwise.
    """
    if res is not None and res.status_code == 429:
        return True
    if isinstance(err, (requests.Timeout, requests.ConnectionError)):
        return True
    if res is not None and 500 <= res.status_code < 600:
        return True
    return False


def request_json(
    method: str,
    url: str,
    headers: Dict[str, str],
    json_body: Optional[Dict[str, Any]] = None,
    timeout: float = DEFAULT_TIMEOUT,
    gateway: Optional[str] = None,
) -> Tuple[Dict[str, Any], int]:
    """
    Send a request and decode the JSON body, whatever the status code.

    Provider error bodies carry the reason, so non-2xx responses are returned
    to the caller rather than raised; only transport failures and undecodable
    bodies become GatewayError.

    Args:
        method (str): HTTP method ("GET" or "POST").
        url (str): Absolute URL.
        headers (Dict[str, str]): Request headers, including authorization.
        json_body (Optional[Dict[str, Any]]): JSON payload for POST.
        timeout (float): Socket timeout per attempt in seconds.
        gateway (Optional[str]): Gateway name for error reporting.

    Returns:
        Tuple[Dict[str, Any], int]: Decoded JSON body and HTTP status code.

    Raises:
        GatewayError: If the provider cannot be reached or returns non-JSON.
    """
    retryable = method.upper() == "GET"
    retries = 0

    while True:
        res: Optional[requests.Response] = None
        try:
            logger.debug("gateway_request", method=method, url=url, attempt=retries + 1)
            res = requests.request(method, url, headers=headers, json=json_body, timeout=timeout)

            if retryable and should_retry(res, None) and retries < MAX_RETRIES:
                retries += 1
                logger.warning(
                    "gateway_request_retry", url=url, status_code=res.status_code, attempt=retries
                )
                time.sleep(RETRY_DELAY * retries)
                continue

            try:
                body = cast(Dict[str, Any], res.json())
            except ValueError:
                raise GatewayError(
                    f"Non-JSON response (HTTP {res.status_code})", gateway=gateway
                )
            return body, res.status_code

        except requests.RequestException as err:
            logger.warning("gateway_request_error", url=url, error=str(err))
            if not retryable or retries >= MAX_RETRIES or not should_retry(res, err):
                raise GatewayError(str(err), gateway=gateway) from err
            retries += 1
            time.sleep(RETRY_DELAY * retries)
