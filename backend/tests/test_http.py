"""
Tests for HttpFetcher retry, backoff and rate-limit handling.
"""
import pytest
import requests
from unittest.mock import MagicMock, Mock

from conftest import FakeClock
from salesync.clock import Deadline
from salesync.http import FetchErrorKind, HttpFetcher, parse_retry_after


def mock_response(status_code=200, json_data=None, headers=None, links=None, bad_json=False):
    response = Mock()
    response.status_code = status_code
    response.headers = headers or {}
    response.links = links or {}
    if bad_json:
        response.json.side_effect = ValueError("Expecting value")
    else:
        response.json.return_value = json_data if json_data is not None else {}
    return response


def make_fetcher(responses, clock=None, **kwargs):
    session = MagicMock()
    session.headers = {}
    session.get.side_effect = responses
    options = dict(max_retries=3, initial_retry_delay=1, max_retry_delay=30, max_rate_limit_waits=3)
    options.update(kwargs)
    return HttpFetcher(session, clock=clock or FakeClock(), **options), session


class TestSuccess:

    def test_returns_json_and_links(self):
        links = {'next': {'url': 'https://shop/products.json?page_info=2', 'rel': 'next'}}
        fetcher, session = make_fetcher([mock_response(json_data={'products': []}, links=links)])

        result = fetcher.get_json('https://shop/products.json')

        assert result.ok
        assert result.value.data == {'products': []}
        assert result.value.links['next']['url'].endswith('page_info=2')
        assert session.get.call_count == 1

    def test_headers_applied_to_session(self):
        session = MagicMock()
        session.headers = {}
        HttpFetcher(session, headers={'X-Shopify-Access-Token': 'abc'})
        assert session.headers['X-Shopify-Access-Token'] == 'abc'

    def test_clone_uses_new_session_with_same_settings(self):
        session = MagicMock(headers={})
        fresh = MagicMock(headers={})
        fetcher = HttpFetcher(session, max_retries=4, headers={'Accept': 'application/json'},
                              auth=('ck', 'cs'), session_factory=lambda: fresh)

        clone = fetcher.clone()

        assert clone.session is fresh
        assert fresh.headers == {'Accept': 'application/json'}
        assert (clone.max_retries, clone.auth, clone.clock) == (4, ('ck', 'cs'), fetcher.clock)


class TestTransientErrors:
    """Network errors and 5xx back off exponentially."""

    def test_retries_then_succeeds(self):
        clock = FakeClock()
        fetcher, session = make_fetcher([
            requests.exceptions.ConnectionError("reset"),
            mock_response(503),
            mock_response(json_data={'ok': True}),
        ], clock=clock)

        result = fetcher.get_json('https://shop/x')

        assert result.ok
        assert session.get.call_count == 3
        assert clock.sleeps == [1, 2]

    def test_gives_up_after_max_retries(self):
        fetcher, session = make_fetcher([mock_response(500)] * 3)
        result = fetcher.get_json('https://shop/x')
        assert not result.ok
        assert result.error.kind == FetchErrorKind.TRANSIENT
        assert result.error.retryable
        assert session.get.call_count == 3

    def test_backoff_capped(self):
        clock = FakeClock()
        fetcher, _ = make_fetcher([mock_response(502)] * 5, clock=clock, max_retries=5,
                                  initial_retry_delay=4, max_retry_delay=10)
        fetcher.get_json('https://shop/x')
        assert clock.sleeps == [4, 8, 10, 10]

    def test_invalid_json_is_transient(self):
        fetcher, session = make_fetcher([mock_response(bad_json=True), mock_response(json_data=[1])])
        result = fetcher.get_json('https://shop/x')
        assert result.ok
        assert result.value.data == [1]

    def test_no_backoff_past_deadline(self):
        clock = FakeClock()
        fetcher, session = make_fetcher([mock_response(500)] * 3, clock=clock)
        deadline = Deadline.after(clock, 0.5)

        result = fetcher.get_json('https://shop/x', deadline=deadline)

        assert result.error.kind == FetchErrorKind.TRANSIENT
        assert session.get.call_count == 1
        assert clock.sleeps == []


class TestRateLimits:
    """429 waits for Retry-After without using up retries."""

    def test_waits_retry_after(self):
        clock = FakeClock()
        fetcher, session = make_fetcher([
            mock_response(429, headers={'Retry-After': '2.0'}),
            mock_response(429, headers={'Retry-After': '2.0'}),
            mock_response(429, headers={'Retry-After': '2.0'}),
            mock_response(json_data={'ok': True}),
        ], clock=clock, max_retries=1)

        result = fetcher.get_json('https://shop/x')

        assert result.ok
        assert clock.sleeps == [2.0, 2.0, 2.0]

    def test_wait_cap(self):
        fetcher, session = make_fetcher([mock_response(429, headers={'Retry-After': '1'})] * 5,
                                        max_rate_limit_waits=2)
        result = fetcher.get_json('https://shop/x')
        assert result.error.kind == FetchErrorKind.RATE_LIMITED
        assert result.error.status_code == 429
        assert session.get.call_count == 3

    def test_wait_past_deadline_returns_rate_limited(self):
        clock = FakeClock()
        fetcher, _ = make_fetcher([mock_response(429, headers={'Retry-After': '30'})], clock=clock)
        result = fetcher.get_json('https://shop/x', deadline=Deadline.after(clock, 10))
        assert result.error.kind == FetchErrorKind.RATE_LIMITED
        assert result.error.retry_after == 30
        assert clock.sleeps == []

    def test_parse_retry_after(self):
        assert parse_retry_after('3') == 3.0
        assert parse_retry_after(None) == 2.0
        assert parse_retry_after('garbage') == 2.0
        assert parse_retry_after('Wed, 21 Oct 2015 07:28:00 GMT') == 0.0


class TestFatalErrors:

    @pytest.mark.parametrize('status', [401, 403])
    def test_auth_errors_not_retried(self, status):
        fetcher, session = make_fetcher([mock_response(status)])
        result = fetcher.get_json('https://shop/x')
        assert result.error.kind == FetchErrorKind.AUTH
        assert not result.error.retryable
        assert session.get.call_count == 1

    def test_not_found_is_fatal(self):
        fetcher, session = make_fetcher([mock_response(404)])
        result = fetcher.get_json('https://shop/x')
        assert result.error.kind == FetchErrorKind.FATAL
        assert 'HTTP 404' in str(result.error)
