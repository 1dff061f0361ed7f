import logging
import time

import requests

from deploy import metrics

logger = logging.getLogger(__name__)


class HealthProber:
    """Polls a unit's health endpoint until it answers once or a deadline passes."""

    def __init__(
        self,
        path: str = "/health",
        request_timeout: float = 5.0,
        session: requests.Session | None = None,
        clock=time.monotonic,
        sleep=time.sleep,
    ):
        self.path = path
        self.request_timeout = request_timeout
        self.session = session or requests.Session()
        self.clock = clock
        self.sleep = sleep

    def check_once(self, address: str) -> bool:
        url = f"{address.rstrip('/')}{self.path}"
        try:
            response = self.session.get(url, timeout=self.request_timeout)
        except requests.RequestException as e:
            logger.debug(f"  {url}: connection failed ({type(e).__name__})")
            return False
        if response.ok:
            return True
        logger.debug(f"  {url}: HTTP {response.status_code}")
        return False

    def probe(self, address: str, timeout: float, interval: float) -> bool:
        start = self.clock()
        deadline = start + timeout
        attempts = 0

        while True:
            attempts += 1
            if self.check_once(address):
                elapsed = round(self.clock() - start, 1)
                logger.info(
                    f"  Health OK after {attempts} attempts ({elapsed}s)",
                    extra={"attempts": attempts, "elapsed_s": elapsed},
                )
                metrics.health_probe_attempts.observe(attempts)
                return True

            remaining = deadline - self.clock()
            if remaining <= 0:
                break
            logger.info(f"  Poll {attempts}: not healthy yet")
            self.sleep(min(interval, remaining))

        logger.warning(
            f"  Health check timed out after {timeout}s ({attempts} attempts)",
            extra={"attempts": attempts},
        )
        metrics.health_probe_attempts.observe(attempts)
        return False
