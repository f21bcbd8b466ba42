from __future__ import annotations

import json
import logging
import time
from typing import Any, Dict, Optional

from bityield.http import HttpClient

logger = logging.getLogger(__name__)


class LokiShipper:
    """Pushes request lines to a Loki instance. Never raises."""

    def __init__(self, http: HttpClient, url: str, env: str, service: str = "bityield"):
        self.http = http
        self.url = f"{url.rstrip('/')}/loki/api/v1/push"
        self.labels = {"service": service, "env": env}

    def payload(self, level: str, message: str, extra: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        ts_ns = str(int(time.time() * 1_000_000_000))
        return {
            "streams": [
                {
                    "stream": {**self.labels, "level": level.lower()},
                    "values": [[ts_ns, json.dumps({"message": message, **(extra or {})})]],
                }
            ]
        }

    async def log(self, level: str, message: str, extra: Optional[Dict[str, Any]] = None) -> bool:
        try:
            await self.http.post(self.url, json=self.payload(level, message, extra), headers={"Content-Type": "application/json"})
        except Exception as e:
            logger.debug(f"Loki push failed: {e}")
            return False
        return True
