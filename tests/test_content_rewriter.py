import pytest

from core.proxy.content_rewriter import ContentRewriter

from conftest import FONT_CSS

FONT_URL = 'https://fonts.googleapis.com/css?family=Roboto'


@pytest.fixture
def rewriter():
    return ContentRewriter(fallback_host='proxy.internal')


def test_should_rewrite(rewriter):
    assert rewriter.should_rewrite(FONT_URL, 'text/css; charset=utf-8', 200)
    assert rewriter.should_rewrite('https://fonts.googleapis.com/css2?family=Inter', 'text/css', 200)
    assert not rewriter.should_rewrite(FONT_URL, 'text/html', 200)
    assert not rewriter.should_rewrite(FONT_URL, None, 200)
    assert not rewriter.should_rewrite(FONT_URL, 'text/css', 404)
    assert not rewriter.should_rewrite('https://example.com/site.css', 'text/css', 200)


def test_proxy_base_url_prefers_forwarded_host(rewriter):
    assert rewriter.proxy_base_url({'X-Forwarded-Host': 'a.example', 'Host': 'b.example'}) == 'https://a.example'
    assert rewriter.proxy_base_url({'Host': 'b.example'}) == 'https://b.example'
    assert rewriter.proxy_base_url({}) == 'https://proxy.internal'


def test_rewrite(rewriter):
    css = rewriter.rewrite(FONT_CSS, 'https://p.example')
    assert css.count('url(https://p.example/https://fonts.gstatic.com/s/roboto/v30/') == 2
    assert "format('woff2')" in css


def test_rewrite_leaves_other_urls(rewriter):
    css = "a { background: url(https://cdn.example.com/bg.png) }"
    assert rewriter.rewrite(css, 'https://p.example') == css


def test_rewrite_body(rewriter):
    body = rewriter.rewrite_body(FONT_CSS.encode('utf-8'), {'Host': 'h.example'})
    assert isinstance(body, bytes)
    assert b'url(https://h.example/https://fonts.gstatic.com/' in body


def test_rewrite_body_rejects_non_utf8(rewriter):
    with pytest.raises(UnicodeDecodeError):
        rewriter.rewrite_body(b'\xff\xfe\x00body', {})
