"""Remote store adapter.

:class:`RemoteStore` is the boundary to the authoritative database. Every call is a coroutine and
fails with one of two exception classes the sync engine tells apart:

    - :class:`status.ConnectivityException`: the remote could not be reached (timeouts, refused
      connections, gateway errors). The engine falls back to offline mode.
    - :class:`status.RemoteRejectedException`: the remote answered and refused the operation
      (constraint or validation failures). Never retried.

:class:`PostgrestRemoteStore` talks to a PostgREST (Supabase style) REST endpoint using aiohttp.
"""
import abc
import asyncio
import json
import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import aiohttp

from .query import Filter, Order
from ..status import status

Target = Union[str, Sequence[Filter]]

#: Gateway errors mean the database behind the proxy is unreachable, not that it refused the request
CONNECTIVITY_STATUS_CODES = (502, 503, 504)


class RemoteStore(abc.ABC):
    """Interface of the authoritative store."""

    url: str = ''

    @abc.abstractmethod
    async def select(self, collection: str, filters: Sequence[Filter] = (),
                     order: Sequence[Order] = ()) -> List[Dict[str, Any]]:
        """Return the rows of ``collection`` matching ``filters`` sorted by ``order``."""

    @abc.abstractmethod
    async def insert(self, collection: str, row: Dict[str, Any]) -> Dict[str, Any]:
        """Insert a row and return it as stored, including its server-assigned id."""

    @abc.abstractmethod
    async def update(self, collection: str, target: Target, changes: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Apply ``changes`` to the row with id ``target``, or to every row matching the filters.

        Returns:
            List[Dict[str, Any]]: The affected rows after the update.
        """

    @abc.abstractmethod
    async def delete(self, collection: str, target: Target) -> None:
        """Delete the row with id ``target``, or every row matching the filters."""

    async def close(self) -> None:
        pass


def format_value(value: Any) -> str:
    """Format a scalar as a PostgREST filter operand."""
    if value is None:
        return 'null'
    if isinstance(value, bool):
        return 'true' if value else 'false'
    return str(value)


def _format_list_item(value: Any) -> str:
    text = format_value(value)
    if any(c in text for c in ',()"'):
        escaped = text.replace('\\', '\\\\').replace('"', '\\"')
        return f'"{escaped}"'
    return text


def encode_filter(f: Filter) -> Tuple[str, str]:
    """Encode a filter as a ``(field, "op.value")`` query parameter.

    Examples:
        >>> encode_filter(Filter('category', 'Food'))
        ('category', 'eq.Food')
        >>> encode_filter(Filter('id', ['a', 'b'], op='in'))
        ('id', 'in.(a,b)')
    """
    if f.op == 'in':
        return f.field, f'in.({",".join(_format_list_item(v) for v in f.value)})'
    return f.field, f'{f.op}.{format_value(f.value)}'


def encode_order(order: Sequence[Order]) -> Optional[Tuple[str, str]]:
    if not order:
        return None
    return 'order', ','.join(f'{o.field}.{"desc" if o.descending else "asc"}' for o in order)


def encode_target(target: Target) -> List[Tuple[str, str]]:
    """Encode an id or a filter sequence as query parameters.

    Raises:
        ValueError: If the target is empty; unfiltered bulk writes are never sent.
    """
    if isinstance(target, str):
        if not target:
            raise ValueError('Empty id target.')
        return [('id', f'eq.{target}')]
    params = [encode_filter(f) for f in target]
    if not params:
        raise ValueError('Refusing to send an update or delete without filters.')
    return params


class PostgrestRemoteStore(RemoteStore):
    """Remote store backed by a PostgREST endpoint.

    Requests go to ``<url>/rest/v1/<collection>`` with the project's api key sent both as the
    ``apikey`` header and as a bearer token.

    Args:
        url: Base url of the project, e.g. ``https://xyz.supabase.co``.
        api_key: The anon or service key.
        timeout: Total request timeout in seconds.
        session: Optional pre-built session. One is created lazily on first use otherwise.
    """

    def __init__(self, url: str, api_key: str, timeout: float = 15.0,
                 session: Optional[aiohttp.ClientSession] = None) -> None:
        if not url:
            raise status.RemoteNotConfiguredException
        self.url = url.rstrip('/')
        self.api_key = api_key
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self._session = session
        self._owns_session = session is None

    @property
    def headers(self) -> Dict[str, str]:
        return {
            'apikey': self.api_key,
            'Authorization': f'Bearer {self.api_key}',
            'Content-Type': 'application/json',
            'Accept': 'application/json',
            'Prefer': 'return=representation',
        }

    def endpoint(self, collection: str) -> str:
        return f'{self.url}/rest/v1/{collection}'

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(headers=self.headers, timeout=self.timeout)
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def _request(self, method: str, collection: str,
                       params: Optional[List[Tuple[str, str]]] = None,
                       body: Any = None) -> Any:
        """Send a request and decode the JSON response.

        Raises:
            status.ConnectivityException: On network failures, timeouts and gateway errors.
            status.RemoteRejectedException: On any other error response.
        """
        url = self.endpoint(collection)
        logging.debug(f'{method} {url} params={params}')
        session = self._get_session()
        try:
            async with session.request(
                    method, url, params=params or None, json=body,
                    headers=self.headers, timeout=self.timeout) as resp:
                text = await resp.text()
                if resp.status in CONNECTIVITY_STATUS_CODES:
                    raise status.ConnectivityException(
                        f'{method} {collection} failed with HTTP {resp.status}.'
                    )
                if resp.status >= 400:
                    raise status.RemoteRejectedException(
                        f'{method} {collection}: {self._error_message(text, resp.reason)}',
                        code=resp.status,
                    )
        except asyncio.TimeoutError as e:
            raise status.ConnectivityException(f'{method} {collection} timed out.') from e
        except aiohttp.ClientError as e:
            raise status.ConnectivityException(f'{method} {collection} failed: {e}') from e

        if not text:
            return None
        try:
            return json.loads(text)
        except json.JSONDecodeError as e:
            raise status.RemoteRejectedException(
                f'{method} {collection} returned invalid JSON: {e}', code=resp.status
            ) from e

    @staticmethod
    def _error_message(text: str, reason: Optional[str]) -> str:
        try:
            data = json.loads(text)
        except (json.JSONDecodeError, TypeError):
            return text or reason or 'Unknown error'
        if isinstance(data, dict):
            return data.get('message') or data.get('error') or text
        return text

    async def select(self, collection: str, filters: Sequence[Filter] = (),
                     order: Sequence[Order] = ()) -> List[Dict[str, Any]]:
        params = [('select', '*')]
        params += [encode_filter(f) for f in filters]
        encoded_order = encode_order(order)
        if encoded_order:
            params.append(encoded_order)
        data = await self._request('GET', collection, params=params)
        return list(data or [])

    async def insert(self, collection: str, row: Dict[str, Any]) -> Dict[str, Any]:
        data = await self._request('POST', collection, body=row)
        if isinstance(data, list):
            if not data:
                raise status.RemoteRejectedException(f'Insert into {collection} returned no row.')
            return data[0]
        return data

    async def update(self, collection: str, target: Target, changes: Dict[str, Any]) -> List[Dict[str, Any]]:
        data = await self._request('PATCH', collection, params=encode_target(target), body=changes)
        return list(data or [])

    async def delete(self, collection: str, target: Target) -> None:
        await self._request('DELETE', collection, params=encode_target(target))
