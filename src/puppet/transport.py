import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import httpx

from puppet.errors import TransportError
from puppet.provider import WireRequest

logger = logging.getLogger(__name__)


class HttpTransport:
    """Streams provider responses over a shared ``httpx.AsyncClient``.

    Args:
        client: Client to use; a new one is created when omitted.
        timeout: Socket timeout in seconds for a created client.
    """

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
    ):
        self.client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout),
        )

    @asynccontextmanager
    async def stream(
        self, request: WireRequest,
    ) -> AsyncIterator[AsyncIterator[bytes]]:
        """POST *request* and yield the body as an async chunk iterator.

        The response is closed when the block exits, including when the
        consumer abandons it early.

        Raises:
            TransportError: Non-200 status, or any ``httpx`` failure
                while connecting or reading.
        """
        logger.debug(f"call api, url={request.url}, model={request.body.get('model')}")
        try:
            async with self.client.stream(
                "POST", request.url, headers=request.headers,
                json=request.body,
            ) as response:
                if response.status_code != 200:
                    body = (await response.aread()).decode("utf-8", errors="replace")
                    logger.info(f"body={json.dumps(request.body)}")
                    raise TransportError(
                        f"failed to call api, status={response.status_code}, "
                        f"response={body}",
                        status=response.status_code,
                        body=body,
                    )
                yield response.aiter_bytes()
        except httpx.HTTPError as e:
            raise TransportError(f"failed to call api, error={e}") from e

    async def aclose(self) -> None:
        await self.client.aclose()
