import json

import pytest

from config import CrawlerInput, load_input, proxy_configuration
from errors import ConfigurationError


def test_from_dict_accepts_camel_case_options():
    crawler_input = CrawlerInput.from_dict({
        "startUrls": ["https://a.example", {"url": "https://b.example"}, {"url": " "}, ""],
        "maxConcurrency": "5",
        "maxRequestsPerCrawl": "100",
        "fetchHtml": True,
        "debugLog": True,
        "customData": {"k": "v"},
        "unknownOption": 1,
    })

    assert crawler_input.start_urls == ["https://a.example", "https://b.example"]
    assert crawler_input.max_concurrency == 5
    assert crawler_input.max_requests_per_crawl == 100
    assert crawler_input.request_limit == 100
    assert crawler_input.max_request_retries == 3
    assert crawler_input.fetch_html is True
    assert crawler_input.debug_log is True
    assert crawler_input.custom_data == {"k": "v"}


def test_defaults():
    crawler_input = CrawlerInput.from_dict({"startUrls": ["https://a.example"]})
    assert crawler_input.max_concurrency == 20
    assert crawler_input.max_requests_per_crawl is None
    assert crawler_input.request_limit == 0
    assert crawler_input.extend_output_function is None


def test_empty_start_urls_fail_validation():
    with pytest.raises(ConfigurationError):
        CrawlerInput.from_dict({"startUrls": []}).validate()
    with pytest.raises(ConfigurationError):
        CrawlerInput().validate()


def test_invalid_numbers_are_configuration_errors():
    with pytest.raises(ConfigurationError):
        CrawlerInput.from_dict({"startUrls": ["https://a"], "maxRequestsPerCrawl": "lots"})


def test_load_input(tmp_path):
    path = tmp_path / "INPUT.json"
    path.write_text(json.dumps({"startUrls": [{"url": "https://a.example"}]}), encoding="utf-8")
    assert load_input(str(path)).start_urls == ["https://a.example"]

    bad = tmp_path / "bad.json"
    bad.write_text("[1, 2]", encoding="utf-8")
    with pytest.raises(ConfigurationError):
        load_input(str(bad))

    with pytest.raises(ConfigurationError):
        load_input(str(tmp_path / "missing.json"))


def test_proxy_configuration_rotates_per_session():
    proxies = proxy_configuration({"proxyUrls": ["http://p1:8000", "http://p2:8000"]})
    first = proxies.new_url("s1")
    assert proxies.new_url("s1") == first
    assert proxies.new_url("s2") != first


def test_proxy_configuration_policy():
    assert proxy_configuration(None) is None
    with pytest.raises(ConfigurationError):
        proxy_configuration(None, required=True)
    with pytest.raises(ConfigurationError):
        proxy_configuration({"proxyUrls": "http://p1:8000"})
    with pytest.raises(ConfigurationError):
        proxy_configuration({"proxyUrls": ["socks://p1:8000"]})
