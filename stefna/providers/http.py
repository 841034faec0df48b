"""
HTTP transport shared by the vendor strategies.

Exponential backoff with jitter on 429 / 5xx and connection errors; a
`Retry-After` header wins over the computed delay.
"""

import logging
import random
import time

import requests

logger = logging.getLogger(__name__)

BASE_DELAY = 2.0       # seconds - doubles each retry: 2, 4, 8, ...
JITTER_MAX = 1.0
RETRYABLE_STATUS_CODES = {429, 502, 503, 504}


class VendorClient:
    def __init__(
        self,
        session: requests.Session,
        name: str,
        auth_header: dict,
        max_retries: int = 3,
        timeout: float = 60.0,
        sleep=time.sleep,
    ):
        self._session = session
        self.name = name
        self._auth_header = auth_header
        self._max_retries = max_retries
        self._timeout = timeout
        self._sleep = sleep

    def _delay(self, attempt: int, response=None) -> float:
        if response is not None:
            retry_after = response.headers.get("Retry-After")
            if retry_after and retry_after.isdigit():
                return float(retry_after)
        return BASE_DELAY * (2 ** attempt) + random.uniform(0, JITTER_MAX)

    def request(self, method: str, url: str, **kwargs) -> requests.Response:
        headers = {**self._auth_header, **kwargs.pop("headers", {})}
        kwargs.setdefault("timeout", self._timeout)

        for attempt in range(self._max_retries + 1):
            last_attempt = attempt == self._max_retries
            try:
                response = self._session.request(method, url, headers=headers, **kwargs)
            except (requests.ConnectionError, requests.Timeout) as e:
                if last_attempt:
                    raise
                delay = self._delay(attempt)
                logger.warning(
                    f"{self.name} request error on attempt {attempt + 1}/{self._max_retries + 1}: {e} "
                    f"- retrying in {delay:.1f}s"
                )
                self._sleep(delay)
                continue

            if response.status_code not in RETRYABLE_STATUS_CODES or last_attempt:
                response.raise_for_status()
                return response

            delay = self._delay(attempt, response)
            logger.warning(
                f"{self.name} {response.status_code} on attempt {attempt + 1}/{self._max_retries + 1} "
                f"- retrying in {delay:.1f}s (url={url})"
            )
            self._sleep(delay)

        raise RuntimeError(f"Request to {url} failed after {self._max_retries + 1} attempts")

    def post_json(self, url: str, payload: dict) -> dict:
        return self.request("POST", url, json=payload).json()

    def get_json(self, url: str, **kwargs) -> dict:
        return self.request("GET", url, **kwargs).json()
