import logging
import time
from typing import Dict, Optional

import requests

logger = logging.getLogger(__name__)


class Http:
    def __init__(self, timeout: float = 15, retries: int = 3, backoff: float = 1.5,
                 headers: Optional[Dict] = None):
        self.timeout = timeout
        self.retries = retries
        self.backoff = backoff
        self.session = requests.Session()
        self.session.headers["User-Agent"] = "threat-intel-engine/1.0"
        if headers:
            self.session.headers.update(headers)

    def get(self, url: str, headers: Optional[Dict] = None, params: Optional[Dict] = None,
            timeout: Optional[float] = None):
        return self._request("GET", url, headers=headers, params=params, timeout=timeout)

    def post(self, url: str, data: Optional[Dict] = None, headers: Optional[Dict] = None,
             timeout: Optional[float] = None):
        return self._request("POST", url, headers=headers, data=data, timeout=timeout)

    def _request(self, method: str, url: str, timeout: Optional[float] = None, **kwargs):
        """Return the decoded JSON body.

        429 and 5xx responses and connection errors are retried with linear
        backoff; any other 4xx is raised immediately. 404 is returned to the
        caller as ``None`` since providers use it for "unknown sample".

        ``timeout`` bounds the whole call, retries and backoff included.
        """
        deadline = time.monotonic() + (timeout or self.timeout)
        last_err: Optional[Exception] = None
        for attempt in range(self.retries):
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            try:
                r = self.session.request(method, url, timeout=remaining, **kwargs)
                if r.status_code == 404:
                    return None
                r.raise_for_status()
                return r.json()
            except requests.HTTPError as e:
                last_err = e
                status = e.response.status_code if e.response is not None else None
                if status is not None and 400 <= status < 500 and status != 429:
                    raise
            except (requests.ConnectionError, requests.Timeout) as e:
                last_err = e
            if attempt < self.retries - 1:
                delay = self.backoff * (attempt + 1)
                if time.monotonic() + delay >= deadline:
                    break
                logger.debug(f"{method} {url} failed ({last_err}), retrying in {delay:.1f}s")
                time.sleep(delay)
        if last_err is None:
            raise requests.Timeout(f"{method} {url}: no time left before the deadline")
        raise last_err

    def close(self) -> None:
        self.session.close()
