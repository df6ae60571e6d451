import pytest
from multidict import CIMultiDict

from core.proxy.response_pipeline import (
    CacheTee,
    bytes_transferred,
    cache_control,
    cors_headers,
    dynamic_cache_duration,
    filter_response_headers,
    is_cacheable_status,
)


def test_filter_response_headers():
    headers = CIMultiDict([
        ('Content-Type', 'text/plain'),
        ('Set-Cookie', 'a=1'),
        ('Set-Cookie', 'b=2'),
        ('Cache-Control', 'private'),
        ('Transfer-Encoding', 'chunked'),
        ('Connection', 'keep-alive'),
        ('Keep-Alive', 'timeout=5'),
        ('ETag', '"abc"'),
    ])
    assert filter_response_headers(headers) == {'Content-Type': 'text/plain', 'ETag': '"abc"'}


def test_filter_response_headers_combines_repeats():
    headers = CIMultiDict([
        ('Link', '</a.css>; rel=preload'),
        ('Vary', 'Accept'),
        ('link', '</b.js>; rel=preload'),
        ('Vary', 'Origin'),
    ])
    assert filter_response_headers(headers) == {
        'Link': '</a.css>; rel=preload, </b.js>; rel=preload',
        'Vary': 'Accept, Origin',
    }


@pytest.mark.parametrize('status, cacheable', [
    (200, True),
    (204, True),
    (206, False),
    (299, True),
    (304, False),
    (404, False),
])
def test_is_cacheable_status(status, cacheable):
    assert is_cacheable_status(status) is cacheable


def test_cors_headers_echo_requested_headers():
    cors = cors_headers({'Access-Control-Request-Headers': 'Range'})
    assert cors['Access-Control-Allow-Origin'] == '*'
    assert cors['Access-Control-Allow-Headers'] == 'Range'
    assert cors_headers({})['Access-Control-Allow-Headers'] == '*'


@pytest.mark.parametrize('status, headers, expected', [
    (206, {'Content-Range': 'bytes 200-999/5000'}, 800),
    (206, {'Content-Range': 'bytes 0-0/*'}, 1),
    (206, {'Content-Range': 'garbage', 'Content-Length': '10'}, 0),
    (206, {'Content-Length': '10'}, 10),
    (200, {'Content-Length': '1234'}, 1234),
    (200, {'Content-Length': 'abc'}, 0),
    (200, {'Content-Range': 'bytes 0-9/10'}, 0),
    (200, {}, 0),
])
def test_bytes_transferred(status, headers, expected):
    assert bytes_transferred(status, headers) == expected


@pytest.mark.parametrize('ms, ttl', [
    (0, 60),
    (199, 60),
    (200, 300),
    (799, 300),
    (800, 600),
    (2999, 600),
    (3000, 1800),
    (60000, 1800),
])
def test_dynamic_cache_duration(ms, ttl):
    assert dynamic_cache_duration(ms) == ttl


def test_cache_control():
    assert cache_control(300) == 'public, s-maxage=300, stale-while-revalidate=300'


def test_cache_tee_collects_body():
    tee = CacheTee(10)
    tee.feed(b'abc')
    tee.feed(b'defghij')
    assert not tee.overflowed
    assert tee.body() == b'abcdefghij'


def test_cache_tee_abandons_oversized_body():
    tee = CacheTee(10)
    tee.feed(b'abcdef')
    tee.feed(b'ghijk')
    tee.feed(b'')
    assert tee.overflowed
    assert tee.body() is None


def test_cache_tee_empty_body():
    assert CacheTee(10).body() == b''
