# ticketgate/notify.py
from __future__ import annotations
import logging
from typing import Optional

import httpx

log = logging.getLogger(__name__)


class Notifier:
    """
    Best-effort hand-off of freshly activated codes to the delivery
    service (email, wallet pass, ...). Failures are logged and dropped:
    the code is already stored on the ticket and can be re-sent.
    """

    def __init__(self, url: Optional[str],
                 client: Optional[httpx.AsyncClient] = None) -> None:
        self.url = url
        self.client = client

    @property
    def enabled(self) -> bool:
        return bool(self.url) and self.client is not None

    async def ticket_activated(self, ticket_id: str, transaction_id: str,
                               code: str) -> bool:
        if not self.enabled:
            return False
        try:
            resp = await self.client.post(self.url, json={
                "ticket_id": ticket_id,
                "transaction_id": transaction_id,
                "code": code,
            })
            resp.raise_for_status()
        except httpx.HTTPError as e:
            log.warning("notify failed ticket=%s: %s", ticket_id, e)
            return False
        return True
