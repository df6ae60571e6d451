import asyncio

import pytest
from aiohttp import web

from core.proxy.cache_manager import MemoryCacheStore
from core.proxy.metrics import MemoryMetrics
from core.proxy.origin_fetcher import OriginFetcher
from core.proxy_manager import PathProxy, create_app

FONT_CSS = (
    "@font-face {\n"
    "  font-family: 'Roboto';\n"
    "  src: url(https://fonts.gstatic.com/s/roboto/v30/KFOmCnqEu92Fr1Mu4mxK.woff2) format('woff2');\n"
    "}\n"
    "@font-face {\n"
    "  font-family: 'Roboto';\n"
    "  src: url(https://fonts.gstatic.com/s/roboto/v30/KFOlCnqEu92Fr1MmEU9fBBc4.woff2) format('woff2');\n"
    "}\n"
)


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


def make_origin_app(calls):
    async def record(request):
        calls.append({
            'method': request.method,
            'path': request.path,
            'headers': dict(request.headers),
        })

    async def hello(request):
        await record(request)
        return web.Response(
            text='hello world',
            headers={'Set-Cookie': 'session=abc', 'Cache-Control': 'no-store', 'X-Origin': 'yes'},
        )

    async def echo(request):
        await record(request)
        body = await request.read()
        return web.json_response({
            'method': request.method,
            'body': body.decode('utf-8'),
            'headers': dict(request.headers),
        })

    async def partial(request):
        await record(request)
        return web.Response(status=206, body=b'x' * 800, headers={'Content-Range': 'bytes 200-999/5000'})

    async def redirect(request):
        await record(request)
        raise web.HTTPFound('/hello')

    async def font_css(request):
        await record(request)
        return web.Response(text=FONT_CSS, content_type='text/css')

    async def git_refs(request):
        await record(request)
        return web.Response(
            text='001e# service=git-upload-pack\n0000',
            content_type='application/x-git-upload-pack-advertisement',
        )

    async def big(request):
        await record(request)
        return web.Response(body=b'a' * 4096)

    async def missing(request):
        await record(request)
        return web.Response(status=404, text='not here')

    async def broken(request):
        await record(request)
        response = web.StreamResponse(headers={'Content-Length': '1000'})
        await response.prepare(request)
        await response.write(b'x' * 100)
        request.transport.close()
        return response

    async def ranged(request):
        await record(request)
        body = bytes(range(100))
        if request.headers.get('Range') == 'bytes=0-9':
            return web.Response(status=206, body=body[:10], headers={'Content-Range': 'bytes 0-9/100'})
        return web.Response(body=body, headers={'Accept-Ranges': 'bytes'})

    async def links(request):
        await record(request)
        response = web.Response(text='linked')
        response.headers.add('Link', '</a.css>; rel=preload')
        response.headers.add('Link', '</b.js>; rel=preload')
        return response

    async def slow(request):
        await record(request)
        await asyncio.sleep(2)
        return web.Response(text='late')

    app = web.Application()
    app.router.add_get('/hello', hello)
    app.router.add_route('*', '/echo', echo)
    app.router.add_get('/partial', partial)
    app.router.add_get('/redirect', redirect)
    app.router.add_get('/fonts.googleapis.com/css', font_css)
    app.router.add_get('/repo.git/info/refs', git_refs)
    app.router.add_get('/big', big)
    app.router.add_get('/missing', missing)
    app.router.add_get('/broken', broken)
    app.router.add_get('/slow', slow)
    app.router.add_get('/ranged', ranged)
    app.router.add_get('/links', links)
    return app


@pytest.fixture
async def origin(aiohttp_server):
    calls = []
    server = await aiohttp_server(make_origin_app(calls))
    server.calls = calls
    return server


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache_store(clock):
    return MemoryCacheStore(maxsize=64, timer=clock)


@pytest.fixture
def metrics():
    return MemoryMetrics()


@pytest.fixture
def make_proxy_client(aiohttp_client, cache_store, metrics):
    async def factory(**kwargs):
        kwargs.setdefault('cache_store', cache_store)
        kwargs.setdefault('metrics', metrics)
        kwargs.setdefault('fetcher', OriginFetcher(max_concurrent=4, request_timeout=5))
        kwargs.setdefault('max_cache_body_bytes', 1024)
        proxy = PathProxy(**kwargs)
        client = await aiohttp_client(create_app(proxy))
        return client

    return factory


@pytest.fixture
async def proxy_client(make_proxy_client):
    return await make_proxy_client()