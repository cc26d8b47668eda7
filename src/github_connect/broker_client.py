"""
Client side of the broker's HTTP contract.
"""
import logging
from typing import Dict, Optional

import httpx
from pydantic import ValidationError

from .errors import BrokerError
from .models import BrokerResponse

logger = logging.getLogger(__name__)


class BrokerClient:

    def __init__(self, url: str, timeout: float = 30.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.url = url
        self.timeout = timeout
        self.transport = transport

    async def _post(self, body: Dict) -> Dict:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                resp = await client.post(self.url, json=body)
        except httpx.RequestError as e:
            raise BrokerError(f"broker unavailable: {e}") from e

        try:
            data = resp.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}
        if resp.status_code >= 400 or data.get('error'):
            raise BrokerError(data.get('error') or f"broker answered {resp.status_code}")
        return data

    async def get_client_config(self) -> Dict:
        data = await self._post({'action': 'get_client_id'})
        return {'client_id': data.get('client_id'), 'app_slug': data.get('app_slug')}

    async def exchange(self, code: str, installation_id: Optional[str] = None) -> BrokerResponse:
        body = {'code': code}
        if installation_id:
            body['installation_id'] = installation_id
        data = await self._post(body)
        try:
            return BrokerResponse.model_validate(data)
        except ValidationError as e:
            logger.error("Malformed broker response: %s", e)
            raise BrokerError('broker returned a malformed response') from e
