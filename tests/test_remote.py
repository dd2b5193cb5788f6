"""
Tests for LedgerSync.core.remote: PostgREST parameter encoding, request shape and error mapping.

The adapter is pointed at a local aiohttp server that records the requests it receives.

Run:
    python -m unittest tests.test_remote
"""
import unittest

from aiohttp import test_utils, web

from LedgerSync.core.query import Filter, Order
from LedgerSync.core.remote import (
    PostgrestRemoteStore,
    encode_filter,
    encode_order,
    encode_target,
    format_value,
)
from LedgerSync.status import status
from tests.base import BaseAsyncTestCase


class EncodingTests(unittest.TestCase):

    def test_format_value(self):
        self.assertEqual(format_value(None), 'null')
        self.assertEqual(format_value(True), 'true')
        self.assertEqual(format_value(False), 'false')
        self.assertEqual(format_value(12.5), '12.5')

    def test_encode_filter(self):
        self.assertEqual(encode_filter(Filter('category', 'Food')), ('category', 'eq.Food'))
        self.assertEqual(encode_filter(Filter('amount', 10, op='gte')), ('amount', 'gte.10'))
        self.assertEqual(encode_filter(Filter('note', None, op='is')), ('note', 'is.null'))

    def test_encode_in_filter_quotes_reserved_characters(self):
        f = Filter('category', ['Food', 'Bills, utilities', 'Say "hi"'], op='in')
        self.assertEqual(encode_filter(f), ('category', 'in.(Food,"Bills, utilities","Say \\"hi\\"")'))

    def test_encode_order(self):
        self.assertIsNone(encode_order([]))
        self.assertEqual(
            encode_order([Order('date', descending=True), Order('amount')]),
            ('order', 'date.desc,amount.asc'),
        )

    def test_encode_target(self):
        self.assertEqual(encode_target('srv-1'), [('id', 'eq.srv-1')])
        self.assertEqual(encode_target([Filter('category', 'Food')]), [('category', 'eq.Food')])
        with self.assertRaises(ValueError):
            encode_target('')
        with self.assertRaises(ValueError):
            encode_target([])

    def test_missing_url(self):
        with self.assertRaises(status.RemoteNotConfiguredException):
            PostgrestRemoteStore('', 'key')


class PostgrestRemoteStoreTests(BaseAsyncTestCase):

    async def asyncSetUp(self) -> None:
        self.requests = []
        self.response = None

        async def handler(request):
            body = await request.json() if request.can_read_body else None
            self.requests.append({
                'method': request.method,
                'path': request.path,
                'query': list(request.query.items()),
                'headers': dict(request.headers),
                'body': body,
            })
            if self.response is not None:
                return self.response()
            if request.method == 'POST':
                return web.json_response([{**body, 'id': 'srv-1'}], status=201)
            if request.method == 'PATCH':
                return web.json_response([{'id': 'srv-1', **body}])
            if request.method == 'DELETE':
                return web.json_response([])
            return web.json_response([{'id': 'srv-1', 'category': 'Food'}])

        app = web.Application()
        app.router.add_route('*', '/rest/v1/{collection}', handler)
        self.server = test_utils.TestServer(app)
        await self.server.start_server()
        self.remote = PostgrestRemoteStore(str(self.server.make_url('/')), 'secret-key', timeout=5.0)

    async def asyncTearDown(self) -> None:
        await self.remote.close()
        await self.server.close()
        await super().asyncTearDown()

    async def test_select(self):
        rows = await self.remote.select(
            'transactions', [Filter('category', 'Food')], [Order('date', descending=True)]
        )
        self.assertEqual(rows, [{'id': 'srv-1', 'category': 'Food'}])

        request = self.requests[0]
        self.assertEqual(request['method'], 'GET')
        self.assertEqual(request['path'], '/rest/v1/transactions')
        self.assertEqual(
            request['query'],
            [('select', '*'), ('category', 'eq.Food'), ('order', 'date.desc')],
        )

    async def test_auth_headers(self):
        await self.remote.select('categories')
        headers = self.requests[0]['headers']
        self.assertEqual(headers['apikey'], 'secret-key')
        self.assertEqual(headers['Authorization'], 'Bearer secret-key')
        self.assertEqual(headers['Prefer'], 'return=representation')

    async def test_insert_returns_stored_row(self):
        row = await self.remote.insert('categories', {'name': 'Food', 'type': 'expense'})
        self.assertEqual(row, {'name': 'Food', 'type': 'expense', 'id': 'srv-1'})
        self.assertEqual(self.requests[0]['method'], 'POST')
        self.assertEqual(self.requests[0]['body'], {'name': 'Food', 'type': 'expense'})

    async def test_update_by_id_and_by_filter(self):
        await self.remote.update('transactions', 'srv-1', {'amount': 5})
        await self.remote.update('transactions', [Filter('category', 'Food')], {'category': 'Groceries'})
        self.assertEqual(self.requests[0]['query'], [('id', 'eq.srv-1')])
        self.assertEqual(self.requests[0]['method'], 'PATCH')
        self.assertEqual(self.requests[1]['query'], [('category', 'eq.Food')])
        self.assertEqual(self.requests[1]['body'], {'category': 'Groceries'})

    async def test_delete(self):
        await self.remote.delete('payment_methods', 'srv-7')
        self.assertEqual(self.requests[0]['method'], 'DELETE')
        self.assertEqual(self.requests[0]['query'], [('id', 'eq.srv-7')])

    async def test_client_error_is_rejection(self):
        self.response = lambda: web.json_response(
            {'message': 'duplicate key value violates unique constraint'}, status=409
        )
        with self.assertRaises(status.RemoteRejectedException) as ctx:
            await self.remote.insert('categories', {'name': 'Food'})
        self.assertEqual(ctx.exception.code, 409)
        self.assertIn('duplicate key', str(ctx.exception))

    async def test_gateway_error_is_connectivity(self):
        self.response = lambda: web.Response(status=503, text='upstream unavailable')
        with self.assertRaises(status.ConnectivityException):
            await self.remote.select('transactions')

    async def test_invalid_json_is_rejection(self):
        self.response = lambda: web.Response(status=200, text='<html>not json</html>')
        with self.assertRaises(status.RemoteRejectedException):
            await self.remote.select('transactions')

    async def test_refused_connection_is_connectivity(self):
        remote = PostgrestRemoteStore(f'http://127.0.0.1:{test_utils.unused_port()}', 'key', timeout=2.0)
        try:
            with self.assertRaises(status.ConnectivityException):
                await remote.select('transactions')
        finally:
            await remote.close()
