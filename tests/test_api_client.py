"""Tests for the shared HTTP client."""

from datetime import datetime, timezone
from unittest.mock import MagicMock, Mock, patch

import aiohttp
import pytest
import requests

from notion_migrate.api.client import (
    APIResponse,
    HTTPClient,
    parse_retry_after,
    raise_for_status,
)
from notion_migrate.api.exceptions import (
    AuthenticationError,
    FatalStageError,
    NotFoundError,
    RateLimitError,
    TransientError,
)


def mock_session_for(status: int, body: str = '', headers=None):
    """Build an aiohttp session mock answering every request the same way."""
    mock_response = MagicMock()
    mock_response.status = status
    mock_response.headers = headers or {'Content-Type': 'application/json'}

    async def text():
        return body

    mock_response.text = text
    mock_response.__aenter__.return_value = mock_response
    mock_response.__aexit__.return_value = None

    mock_session = MagicMock()
    mock_session.request.return_value = mock_response
    mock_session.__aenter__.return_value = mock_session
    mock_session.__aexit__.return_value = None
    return mock_session


class TestAPIResponse:
    """Test API response model."""

    def test_api_response_creation(self):
        """Test API response creation."""
        response = APIResponse(
            status_code=200,
            data={'id': 1, 'name': 'test'},
            headers={'Content-Type': 'application/json'},
            success=True,
        )

        assert response.status_code == 200
        assert response.data == {'id': 1, 'name': 'test'}
        assert response.success is True


class TestRaiseForStatus:
    """Test mapping of HTTP statuses onto migration errors."""

    def test_success_does_not_raise(self):
        """Test that 2xx and 3xx pass."""
        raise_for_status(200, {}, None)
        raise_for_status(304, {}, None)

    def test_rate_limit_carries_retry_after(self):
        """Test that 429 becomes a rate limit error with the server's wait."""
        with pytest.raises(RateLimitError) as exc_info:
            raise_for_status(429, {'Retry-After': '12'}, None)

        assert exc_info.value.retry_after == 12.0
        assert exc_info.value.status_code == 429

    def test_rate_limit_header_is_case_insensitive(self):
        """Test that a lower-case retry-after header is honoured."""
        with pytest.raises(RateLimitError) as exc_info:
            raise_for_status(429, {'retry-after': '7'}, None)

        assert exc_info.value.retry_after == 7.0

    def test_rate_limit_with_http_date(self):
        """Test that an HTTP-date Retry-After still yields a rate limit error."""
        with pytest.raises(RateLimitError) as exc_info:
            raise_for_status(429, {'Retry-After': 'Wed, 21 Oct 2015 07:28:00 GMT'}, None)

        # A date in the past means no extra wait
        assert exc_info.value.retry_after == 0.0

    def test_rate_limit_with_garbage_header(self):
        """Test that an unreadable Retry-After falls back to the default wait."""
        with pytest.raises(RateLimitError) as exc_info:
            raise_for_status(429, {'Retry-After': 'soon'}, None)

        assert exc_info.value.retry_after == 60.0

    @pytest.mark.parametrize(
        'status,error_type',
        [
            (401, AuthenticationError),
            (403, AuthenticationError),
            (404, NotFoundError),
            (408, TransientError),
            (500, TransientError),
            (503, TransientError),
            (400, FatalStageError),
            (422, FatalStageError),
        ],
    )
    def test_status_mapping(self, status, error_type):
        """Test status code to error class mapping."""
        with pytest.raises(error_type):
            raise_for_status(status, {}, {'message': 'boom'})

    def test_message_from_body(self):
        """Test that the service's error message is kept."""
        with pytest.raises(FatalStageError) as exc_info:
            raise_for_status(400, {}, {'message': 'body.parent should be defined'})

        assert 'body.parent should be defined' in str(exc_info.value)
        assert exc_info.value.response_data == {'message': 'body.parent should be defined'}


class TestHTTPClient:
    """Test HTTP client."""

    def setup_method(self):
        """Set up test fixtures."""
        self.client = HTTPClient(
            'https://api.notion.com/v1/',
            headers={'Authorization': 'Bearer test-token'},
            timeout=10,
        )

    def test_client_initialization(self):
        """Test client initialization."""
        assert self.client.base_url == 'https://api.notion.com/v1'
        assert self.client.headers['Authorization'] == 'Bearer test-token'
        assert self.client.headers['Content-Type'] == 'application/json'
        assert self.client.timeout == 10

    def test_build_url(self):
        """Test URL building."""
        assert self.client._build_url('/pages/abc') == 'https://api.notion.com/v1/pages/abc'
        assert self.client._build_url('pages/abc') == 'https://api.notion.com/v1/pages/abc'
        assert (
            self.client._build_url('https://cdn.example.com/x.png')
            == 'https://cdn.example.com/x.png'
        )

    async def test_get_success(self):
        """Test successful async GET request."""
        mock_session = mock_session_for(200, '{"id": "abc"}')

        with patch('notion_migrate.api.client.aiohttp.ClientSession', return_value=mock_session):
            response = await self.client.get('/pages/abc')

        assert response.success is True
        assert response.data == {'id': 'abc'}
        call = mock_session.request.call_args
        assert call.kwargs['method'] == 'GET'
        assert call.kwargs['url'] == 'https://api.notion.com/v1/pages/abc'

    async def test_not_found(self):
        """Test async GET request with 404 error."""
        mock_session = mock_session_for(404, '{"message": "Could not find page"}')

        with patch('notion_migrate.api.client.aiohttp.ClientSession', return_value=mock_session):
            with pytest.raises(NotFoundError):
                await self.client.get('/pages/missing')

    async def test_rate_limited(self):
        """Test that 429 responses surface as rate limit errors."""
        mock_session = mock_session_for(429, '', headers={'Retry-After': '3'})

        with patch('notion_migrate.api.client.aiohttp.ClientSession', return_value=mock_session):
            with pytest.raises(RateLimitError) as exc_info:
                await self.client.post('/pages', data={'parent': {}})

        assert exc_info.value.retry_after == 3.0

    async def test_network_error_is_transient(self):
        """Test that connection failures become transient errors."""
        mock_session = MagicMock()
        mock_session.__aenter__.side_effect = aiohttp.ClientConnectionError('reset')
        mock_session.__aexit__.return_value = None

        with patch('notion_migrate.api.client.aiohttp.ClientSession', return_value=mock_session):
            with pytest.raises(TransientError):
                await self.client.get('/pages/abc')

    @patch('notion_migrate.api.client.requests.get')
    def test_test_connection_success(self, mock_get):
        """Test successful connection test."""
        mock_get.return_value = Mock(status_code=200)

        assert self.client.test_connection('users/me') is True
        assert mock_get.call_args[0][0] == 'https://api.notion.com/v1/users/me'

    @patch('notion_migrate.api.client.requests.get')
    def test_test_connection_failure(self, mock_get):
        """Test failed connection test."""
        mock_get.side_effect = requests.ConnectionError('refused')

        assert self.client.test_connection() is False

    @patch('notion_migrate.api.client.requests.get')
    def test_test_connection_unauthorized(self, mock_get):
        """Test that an error status fails the connection test."""
        mock_get.return_value = Mock(status_code=401)

        assert self.client.test_connection('users/me') is False


class TestParseRetryAfter:
    """Test Retry-After parsing."""

    def test_seconds(self):
        """Test the delta-seconds form."""
        assert parse_retry_after('12') == 12.0
        assert parse_retry_after(' 1.5 ') == 1.5
        assert parse_retry_after('-4') == 0.0

    def test_http_date(self):
        """Test the HTTP-date form relative to now."""
        now = datetime(2026, 10, 21, 7, 27, 30, tzinfo=timezone.utc)

        assert parse_retry_after('Wed, 21 Oct 2026 07:28:00 GMT', now=now) == 30.0

    def test_fallback(self):
        """Test missing and unparseable values."""
        assert parse_retry_after(None) == 60.0
        assert parse_retry_after('', default=5.0) == 5.0
        assert parse_retry_after('not a date', default=5.0) == 5.0
        assert parse_retry_after('inf', default=5.0) == 5.0
