"""
HTTP implementation of the health probe client
"""

# Standard
from typing import Optional

# Third Party
import urllib3

# First Party
import alog

# Local
from .base import HealthProbeClientBase

log = alog.use_channel("PROBE")


class HttpProbeClient(HealthProbeClientBase):
    """Probe an endpoint with a single GET. Any 2xx or 3xx response is a pass.
    Other statuses and transport errors are a fail.
    """

    def __init__(self, pool_manager: Optional[urllib3.PoolManager] = None):
        self.pool_manager = pool_manager or urllib3.PoolManager()

    def http_probe(self, url: str, timeout: float) -> bool:
        try:
            response = self.pool_manager.request(
                "GET",
                url,
                timeout=urllib3.Timeout(total=timeout),
                retries=False,
                preload_content=True,
            )
        except urllib3.exceptions.HTTPError as err:
            log.debug("Probe of %s failed: %s", url, err)
            return False
        log.debug2("Probe of %s returned %d", url, response.status)
        return 200 <= response.status < 400
