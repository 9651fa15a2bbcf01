import asyncio
import logging
import os
import time
from typing import Any, Dict, Optional

import requests

from cutterworks.services.realtime import OrderEvent, Subscriber

logger = logging.getLogger(__name__)

ORDER_WEBHOOK_URL = os.getenv("ORDER_WEBHOOK_URL", "")
ORDER_WEBHOOK_RETRIES = int(os.getenv("ORDER_WEBHOOK_RETRIES", "3"))


class WebhookClient:
    """Forward order events to an external workflow endpoint (e.g. n8n)."""

    def __init__(self, webhook_url: Optional[str] = None, max_retries: int = ORDER_WEBHOOK_RETRIES, backoff: float = 0.5):
        self.webhook = webhook_url or ORDER_WEBHOOK_URL
        self.max_retries = max_retries
        self.backoff = backoff
        logger.debug("WebhookClient initialized with webhook=%s max_retries=%s", self.webhook, self.max_retries)

    def post(self, payload: Dict[str, Any]) -> bool:
        headers = {"Content-Type": "application/json"}
        # same order + sequence is the same fact; let the receiver dedupe
        if "order_id" in payload and "sequence" in payload:
            headers["Idempotency-Key"] = f"order-{payload['order_id']}-{payload['sequence']}"

        for attempt in range(1, self.max_retries + 1):
            try:
                logger.debug("Posting order event attempt=%s url=%s", attempt, self.webhook)
                resp = requests.post(self.webhook, json=payload, timeout=5, headers=headers)
                resp.raise_for_status()
                logger.info("Posted order event url=%s status=%s", self.webhook, resp.status_code)
                return True
            except requests.RequestException as e:
                logger.warning("Attempt %s: failed to post order event to %s: %s", attempt, self.webhook, e)
            if attempt < self.max_retries:
                time.sleep(self.backoff * attempt)
        logger.error("All %s attempts to post order event failed url=%s", self.max_retries, self.webhook)
        return False


class WebhookSubscriber(Subscriber):
    """Broadcast subscriber that hands each event to a WebhookClient off the event loop."""

    actor = None

    def __init__(self, client: WebhookClient):
        self.client = client

    def deliver(self, event: OrderEvent) -> None:
        payload = event.model_dump(mode="json")
        future = asyncio.get_running_loop().run_in_executor(None, self.client.post, payload)
        future.add_done_callback(self._log_failure)

    @staticmethod
    def _log_failure(future: asyncio.Future) -> None:
        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            logger.error("Webhook delivery crashed", exc_info=error)
