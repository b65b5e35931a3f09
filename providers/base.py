import logging
from typing import Any, Callable, Optional

import requests

from config import ProviderConfig
from errors import ConfigurationMissing, ProviderTimeout, ProviderUnavailable
from utils.http import Http

logger = logging.getLogger(__name__)


class HttpProvider:
    """Shared plumbing for adapters that talk to a JSON HTTP API.

    Holds only per-instance state (its config and its own Http session).
    """

    name = "base"
    default_base_url = ""
    requires_api_key = False

    def __init__(self, config: ProviderConfig, http: Optional[Http] = None):
        self.config = config
        self.base_url = (config.base_url or self.default_base_url).rstrip("/")
        self.http = http or Http(
            timeout=config.timeout_seconds,
            retries=config.retries,
            backoff=config.backoff_seconds,
        )

    @property
    def api_key(self) -> str:
        return self.config.api_key

    def ensure_configured(self) -> None:
        if self.requires_api_key and not self.api_key:
            raise ConfigurationMissing(self.name, "API key is not configured")

    def fetch(self, call: Callable[..., Any], *args, timeout: float, **kwargs) -> Any:
        """Run one Http call, mapping transport errors to provider errors."""
        try:
            return call(*args, timeout=timeout, **kwargs)
        except requests.Timeout as e:
            raise ProviderTimeout(self.name, timeout) from e
        except requests.HTTPError as e:
            status = e.response.status_code if e.response is not None else "?"
            if status in (401, 403):
                raise ProviderUnavailable(self.name, f"authentication rejected ({status})") from e
            raise ProviderUnavailable(self.name, f"HTTP {status}") from e
        # requests.JSONDecodeError is both a ValueError and a RequestException
        except ValueError as e:
            raise ProviderUnavailable(self.name, f"unreadable response: {e}") from e
        except requests.RequestException as e:
            raise ProviderUnavailable(self.name, f"request failed: {e}") from e

    def close(self) -> None:
        self.http.close()
