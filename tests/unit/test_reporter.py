"""Unit tests for ReportService."""

import pytest
from unittest.mock import AsyncMock, MagicMock, patch
import httpx

from devnet_upgrader.models.status import PhaseEnum
from devnet_upgrader.services.reporter import ReportService

from conftest import make_record


def _mock_client(post=None):
    mock_response = AsyncMock()
    mock_response.raise_for_status = MagicMock()

    mock_client = AsyncMock()
    mock_client.post = post or AsyncMock(return_value=mock_response)
    mock_client.__aenter__ = AsyncMock(return_value=mock_client)
    mock_client.__aexit__ = AsyncMock()
    return mock_client


@pytest.mark.unit
class TestReportService:
    """Test ReportService in isolation."""

    @pytest.fixture
    def report_service(self):
        """Create ReportService instance."""
        return ReportService(callback_url="http://test-api:9080/upgrades/report")

    def test_disabled_without_callback(self):
        """Test ReportService is disabled by default."""
        # Act
        service = ReportService()

        # Assert
        assert service.enabled is False
        assert service.timeout == 5.0

    @pytest.mark.asyncio
    async def test_disabled_does_not_post(self):
        """Test no HTTP request is made without a callback."""
        with patch("devnet_upgrader.services.reporter.httpx.AsyncClient") as mock_client_class:
            # Act
            await ReportService().report_phase(make_record(), "created")

            # Assert
            mock_client_class.assert_not_called()

    @pytest.mark.asyncio
    async def test_report_phase_success(self, report_service):
        """Test successful phase report."""
        # Arrange
        record = make_record(phase=PhaseEnum.VOTING, proposal_id=4, target_height=215, attempts=1)
        mock_client = _mock_client()

        with patch("devnet_upgrader.services.reporter.httpx.AsyncClient", return_value=mock_client):
            # Act
            await report_service.report_phase(record, "4 vote(s) cast")

            # Assert
            mock_client.post.assert_called_once()
            call_args = mock_client.post.call_args
            assert call_args[0][0] == "http://test-api:9080/upgrades/report"

            payload = call_args[1]["json"]
            assert payload["namespace"] == "default"
            assert payload["devnet"] == "dev1"
            assert payload["record"] == record.name
            assert payload["phase"] == "voting"
            assert payload["proposal_id"] == 4
            assert payload["target_height"] == 215
            assert payload["message"] == "4 vote(s) cast"
            assert payload["error"] is None

    @pytest.mark.asyncio
    async def test_report_phase_with_error(self, report_service):
        """Test phase report carries the record's last error."""
        # Arrange
        record = make_record(phase=PhaseEnum.FAILED, last_error="node2: container failed to start")
        mock_client = _mock_client()

        with patch("devnet_upgrader.services.reporter.httpx.AsyncClient", return_value=mock_client):
            # Act
            await report_service.report_phase(record, "switch failed")

            # Assert
            payload = mock_client.post.call_args[1]["json"]
            assert payload["phase"] == "failed"
            assert payload["error"] == "node2: container failed to start"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error",
        [
            httpx.HTTPStatusError("Server error", request=MagicMock(), response=MagicMock()),
            httpx.RequestError("Connection failed"),
            httpx.TimeoutException("Request timeout"),
            RuntimeError("Unexpected error"),
        ],
    )
    async def test_report_errors_do_not_raise(self, report_service, error):
        """Test callback failures are logged but not raised."""
        # Arrange
        mock_client = _mock_client(post=AsyncMock(side_effect=error))

        with patch("devnet_upgrader.services.reporter.httpx.AsyncClient", return_value=mock_client):
            # Act - should not raise exception
            await report_service.report_phase(make_record(), "Test")

            # Assert - completed without exception
            mock_client.post.assert_called_once()

    @pytest.mark.asyncio
    async def test_report_timeout_config(self, report_service):
        """Test that httpx client uses 5 second timeout."""
        # Arrange
        mock_client = _mock_client()

        with patch("devnet_upgrader.services.reporter.httpx.AsyncClient") as mock_client_class:
            mock_client_class.return_value = mock_client

            # Act
            await report_service.report_phase(make_record(), "Test")

            # Assert - verify timeout was set to 5.0 seconds
            mock_client_class.assert_called_once_with(timeout=5.0)
