from urllib.parse import urlparse

import pytest

from packages.nebula.crawler import (
    CrawlOptions,
    SiteCrawler,
    extract_links,
    extract_page_text,
    normalize_url,
)

from conftest import FakeFetcher, page_html


def test_normalize_url_drops_fragment_and_trailing_slash():
    assert normalize_url("https://Acme.test/docs/#intro") == "https://acme.test/docs"
    assert normalize_url("https://acme.test") == "https://acme.test/"
    assert normalize_url("mailto:sales@acme.test") is None
    assert normalize_url("ftp://acme.test/file") is None


def test_extract_links_resolves_and_filters_schemes():
    html = (
        '<a href="/pricing">p</a><a href="https://other.test/x#frag">o</a>'
        '<a href="mailto:a@b.c">m</a><a href="javascript:void(0)">j</a>'
        '<a href="#top">t</a><a href="/pricing#plans">dup</a>'
    )
    links = extract_links(html, "https://acme.test/")
    assert links == ["https://acme.test/pricing", "https://other.test/x"]


def test_extract_page_text_strips_scripts():
    title, text, description = extract_page_text(page_html("Home", "Hello world"))
    assert title == "Home"
    assert description == "Home description"
    assert "Hello world" in text
    assert "var x" not in text


@pytest.mark.asyncio
async def test_crawl_respects_max_pages():
    pages = {
        f"https://acme.test/p{i}": page_html(f"P{i}", links=[f"/p{i + 1}", f"/p{i + 2}"])
        for i in range(20)
    }
    pages["https://acme.test/"] = page_html("Home", links=["/p0", "/p1"])
    fetcher = FakeFetcher(pages)

    async with SiteCrawler(fetcher, CrawlOptions(max_pages=5, delay=0)) as crawler:
        results = await crawler.crawl_site("https://acme.test/")

    assert len(results) <= 5
    assert len(results) == 5
    assert fetcher.started and fetcher.closed


@pytest.mark.asyncio
async def test_same_domain_crawl_only_returns_seed_host():
    pages = {
        "https://acme.test/": page_html("Home", links=["/a", "https://other.test/b", "/moved"]),
        "https://acme.test/a": page_html("A", links=["https://other.test/c"]),
        "https://other.test/b": page_html("B"),
        "https://other.test/c": page_html("C"),
        "https://elsewhere.test/landing": page_html("Landing"),
    }
    fetcher = FakeFetcher(pages, redirects={"https://acme.test/moved": "https://elsewhere.test/landing"})

    crawler = SiteCrawler(fetcher, CrawlOptions(max_pages=10, delay=0))
    results = await crawler.crawl_site("https://acme.test/")
    await crawler.close()

    assert results
    assert {urlparse(r.url).hostname for r in results} == {"acme.test"}
    assert "https://other.test/b" not in fetcher.fetched


@pytest.mark.asyncio
async def test_each_url_visited_once_and_failures_skipped():
    pages = {
        "https://acme.test/": page_html("Home", links=["/a", "/b", "/a#x"]),
        "https://acme.test/a": page_html("A", links=["/", "/b"]),
        "https://acme.test/b": page_html("B", links=["/a"]),
    }
    fetcher = FakeFetcher(pages, failures={"https://acme.test/b"})

    async with SiteCrawler(fetcher, CrawlOptions(max_pages=10, delay=0)) as crawler:
        results = await crawler.crawl_site("https://acme.test/")

    assert sorted(fetcher.fetched) == sorted(set(fetcher.fetched))
    assert [r.url for r in results] == ["https://acme.test/", "https://acme.test/a"]


@pytest.mark.asyncio
async def test_include_and_exclude_patterns():
    pages = {
        "https://acme.test/": page_html("Home", links=["/blog/one", "/blog/draft-two", "/about"]),
        "https://acme.test/blog/one": page_html("One"),
        "https://acme.test/blog/draft-two": page_html("Draft"),
        "https://acme.test/about": page_html("About"),
    }
    options = CrawlOptions(
        max_pages=10, delay=0, include_patterns=[r"/blog/"], exclude_patterns=[r"draft"]
    )

    async with SiteCrawler(FakeFetcher(pages), options) as crawler:
        results = await crawler.crawl_site("https://acme.test/")

    assert [r.url for r in results] == ["https://acme.test/", "https://acme.test/blog/one"]


@pytest.mark.asyncio
async def test_crawl_rejects_non_http_seed():
    async with SiteCrawler(FakeFetcher({})) as crawler:
        with pytest.raises(ValueError):
            await crawler.crawl_site("ftp://acme.test/")
