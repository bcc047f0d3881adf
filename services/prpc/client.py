#!/usr/bin/env python3
"""PodPulse pRPC client - JSON-RPC 2.0 over a ring of redundant endpoints

Endpoint selection is sticky: a call always starts on the current endpoint and
only a failure moves the ring forward. Within one logical call every endpoint
is tried once, then the last one is retried with a linear backoff for errors
that are worth retrying.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Union

import aiohttp

from shared.config import Config, ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_METHODS = {
    "version": "get-version",
    "stats": "get-stats",
    "pods": "get-pods",
    "pods_with_stats": "get-pods-with-stats",
}


class PrpcError(Exception):
    def __init__(self, message: str, code: Optional[int] = None, data: Any = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.data = data

    def __str__(self):
        if self.code is not None:
            return f"{self.message} (code {self.code})"
        return self.message


class PrpcTimeoutError(PrpcError):
    def __init__(self, message: str = "Request timeout"):
        super().__init__(message, 408)


class PrpcTransportError(PrpcError):
    """Connection failure or non-2xx HTTP status"""


class PrpcProtocolError(PrpcError):
    """The endpoint answered with a JSON-RPC error object"""


def is_client_error(code: Optional[int]) -> bool:
    return code is not None and 400 <= code < 500


def is_retryable(error: PrpcError) -> bool:
    if isinstance(error, PrpcTimeoutError):
        return True
    return not is_client_error(error.code)


@dataclass(frozen=True)
class CallSuccess:
    result: Any


@dataclass(frozen=True)
class CallFailure:
    error: PrpcError
    retryable: bool


CallOutcome = Union[CallSuccess, CallFailure]


class EndpointRing:
    """Round-robin endpoint selector shared by every call of a client"""

    def __init__(self, endpoints: Iterable[str]):
        self._endpoints = [e for e in endpoints if e]
        if not self._endpoints:
            raise ConfigurationError("At least one pRPC endpoint is required")
        self._index = 0

    def __len__(self):
        return len(self._endpoints)

    @property
    def endpoints(self) -> List[str]:
        return list(self._endpoints)

    def current(self) -> str:
        return self._endpoints[self._index]

    def current_index(self) -> int:
        return self._index

    def rotate(self, from_index: Optional[int] = None) -> str:
        """Advance to the next endpoint.

        With from_index, only advance if nobody rotated since the caller read
        the index, so concurrent failures on the same endpoint move the ring
        once.
        """
        if from_index is None or from_index == self._index:
            self._index = (self._index + 1) % len(self._endpoints)
            logger.info(f"Switched to endpoint: {self.current()}")
        return self.current()


class PrpcClient:
    def __init__(
        self,
        endpoints: Iterable[str],
        timeout: float = 10.0,
        max_retries: int = 3,
        retry_base_delay: float = 1.0,
        credits_url: Optional[str] = None,
        methods: Optional[Dict[str, str]] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self._ring = EndpointRing(endpoints)
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._max_retries = max_retries
        self._retry_base_delay = retry_base_delay
        self._credits_url = credits_url
        self._methods = dict(DEFAULT_METHODS, **(methods or {}))
        self._session = session
        self._owns_session = session is None

        logger.info(f"Initialized pRPC client with {len(self._ring)} endpoint(s): {self._ring.endpoints}")

    @classmethod
    def from_config(cls, config: Config) -> "PrpcClient":
        return cls(
            config.PRPC_ENDPOINTS,
            timeout=config.api_timeout_seconds,
            max_retries=config.MAX_RETRIES,
            retry_base_delay=config.retry_base_delay_seconds,
            credits_url=config.CREDITS_API_URL,
            methods={
                "version": config.PRPC_METHOD_VERSION,
                "stats": config.PRPC_METHOD_STATS,
                "pods": config.PRPC_METHOD_PODS,
                "pods_with_stats": config.PRPC_METHOD_PODS_WITH_STATS,
            },
        )

    @property
    def ring(self) -> EndpointRing:
        return self._ring

    def current_endpoint(self) -> str:
        return self._ring.current()

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                headers={"Content-Type": "application/json"}
            )
            self._owns_session = True
        return self._session

    async def close(self):
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    async def _attempt(self, endpoint: str, method: str, params: List[Any]) -> CallOutcome:
        """One POST to one endpoint, folded into an outcome"""
        payload = {
            "jsonrpc": "2.0",
            "id": int(time.time() * 1000),
            "method": method,
            "params": params,
        }

        session = await self._get_session()
        try:
            async with session.post(endpoint, json=payload, timeout=self._timeout) as resp:
                if resp.status >= 400:
                    error = PrpcTransportError(f"HTTP {resp.status} from {endpoint}", resp.status)
                    return CallFailure(error, is_retryable(error))
                data = await resp.json(content_type=None)
        except asyncio.TimeoutError:
            return CallFailure(PrpcTimeoutError(), True)
        except aiohttp.ClientError as e:
            return CallFailure(PrpcTransportError(str(e) or type(e).__name__), True)
        except ValueError as e:
            return CallFailure(PrpcTransportError(f"Invalid JSON from {endpoint}: {e}"), True)

        if not isinstance(data, dict):
            return CallFailure(PrpcTransportError(f"Malformed JSON-RPC response from {endpoint}"), True)

        if data.get("error"):
            err = data["error"] if isinstance(data["error"], dict) else {"message": str(data["error"])}
            error = PrpcProtocolError(err.get("message") or "RPC Error", err.get("code"), err.get("data"))
            return CallFailure(error, is_retryable(error))

        return CallSuccess(data.get("result"))

    async def call(self, method: str, params: Optional[List[Any]] = None) -> Any:
        """Call a pRPC method, failing over across endpoints then backing off"""
        params = params or []
        endpoints_tried = 1
        retries = 0

        while True:
            index = self._ring.current_index()
            endpoint = self._ring.current()
            outcome = await self._attempt(endpoint, method, params)

            if isinstance(outcome, CallSuccess):
                return outcome.result

            error = outcome.error
            if endpoints_tried < len(self._ring):
                logger.warning(f"Endpoint {endpoint} failed on {method}: {error}, trying next endpoint")
                self._ring.rotate(index)
                endpoints_tried += 1
                continue

            if outcome.retryable and retries < self._max_retries:
                retries += 1
                delay = self._retry_base_delay * retries
                logger.warning(
                    f"Retrying {method} after {delay:.1f}s (attempt {retries}/{self._max_retries}): {error}"
                )
                await asyncio.sleep(delay)
                continue

            logger.error(f"❌ pRPC call {method} failed: {error}")
            raise error

    async def get_version(self) -> str:
        response = await self.call(self._methods["version"])
        if isinstance(response, dict):
            return response.get("version") or "unknown"
        return str(response)

    async def get_stats(self) -> Optional[Dict[str, Any]]:
        return await self.call(self._methods["stats"])

    async def get_pods(self) -> List[Dict[str, Any]]:
        return _pods_from(await self.call(self._methods["pods"]))

    async def get_pods_with_stats(self) -> List[Dict[str, Any]]:
        return _pods_from(await self.call(self._methods["pods_with_stats"]))

    async def get_credits(self) -> Dict[str, float]:
        """Credits by pod id; empty on any failure since credits are optional"""
        if not self._credits_url:
            return {}

        try:
            logger.info("Fetching credits from credits API...")
            session = await self._get_session()
            async with session.get(self._credits_url, timeout=self._timeout) as resp:
                resp.raise_for_status()
                data = await resp.json(content_type=None)

            if data.get("status") != "success":
                logger.warning(f"Credits API returned non-success status: {data.get('status')}")

            credits = {}
            for pod_credit in data.get("pods_credits") or []:
                try:
                    credits[pod_credit["pod_id"]] = pod_credit["credits"]
                except (KeyError, TypeError):
                    logger.warning(f"Skipping malformed credits entry: {pod_credit}")

            logger.info(f"Fetched credits for {len(credits)} pods")
            return credits
        except Exception as e:
            logger.error(f"Failed to fetch credits: {e}")
            return {}

    async def health_check(self) -> bool:
        try:
            await self.get_version()
            return True
        except PrpcError:
            return False


def _pods_from(response: Any) -> List[Dict[str, Any]]:
    if response is None:
        return []
    if isinstance(response, list):
        return response
    return response.get("pods") or []
