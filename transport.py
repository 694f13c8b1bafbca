from __future__ import annotations

import logging
import random
import time
from typing import Callable, Dict, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from config import Settings
from errors import RateLimited, TransportFailure


logger = logging.getLogger(__name__)


def build_session(settings: Settings) -> requests.Session:
    session = requests.Session()
    # 429 is handled by ArchiveSession with jittered backoff, not by urllib3.
    retry = Retry(
        total=3,
        connect=0,
        read=0,
        backoff_factor=0.8,
        status_forcelist=(500, 502, 503, 504),
        allowed_methods=("GET",),
        raise_on_status=False,
    )
    pool_size = max(10, settings.concurrency * settings.asset_workers)
    adapter = HTTPAdapter(max_retries=retry, pool_connections=pool_size, pool_maxsize=pool_size)
    session.mount("https://", adapter)
    session.mount("http://", adapter)
    session.headers["User-Agent"] = settings.user_agent
    return session


class ArchiveSession:
    """GET against the archive with rate-limit backoff and bounded network retries."""

    def __init__(
        self,
        settings: Settings,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.settings = settings
        self.session = session if session is not None else build_session(settings)
        self._sleep = sleep

    def backoff_delay(self, attempt: int) -> float:
        jitter = random.uniform(0, self.settings.rate_limit_jitter) if self.settings.rate_limit_jitter else 0.0
        return self.settings.rate_limit_base_delay * (2 ** attempt) + jitter

    def pause(self, seconds: float) -> None:
        if seconds > 0:
            self._sleep(seconds)

    def get(
        self,
        url: str,
        *,
        params: Optional[Dict[str, str]] = None,
        timeout: Optional[int] = None,
        allow_redirects: bool = False,
    ) -> requests.Response:
        rate_limited = 0
        failures = 0
        while True:
            try:
                response = self.session.get(
                    url,
                    params=params,
                    timeout=timeout or self.settings.request_timeout,
                    allow_redirects=allow_redirects,
                )
            except requests.RequestException as exc:
                failures += 1
                if failures > self.settings.network_retries:
                    raise TransportFailure(url, str(exc)) from exc
                logger.debug("request error on %s (%s), retry %d", url, exc, failures)
                self.pause(self.settings.network_retry_delay)
                continue

            if int(response.status_code) == 429:
                if rate_limited >= self.settings.rate_limit_retries:
                    raise RateLimited(url, rate_limited)
                delay = self.backoff_delay(rate_limited)
                rate_limited += 1
                logger.warning("429 Too Many Requests for %s, retrying in %.1fs", url, delay)
                self.pause(delay)
                continue
            return response
