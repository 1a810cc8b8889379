"""Progress reporting to an optional HTTP callback."""

import logging
from typing import Optional

import httpx

from devnet_upgrader.api.models import PhaseReport
from devnet_upgrader.models.record import UpgradeRecord


class ReportService:
    """Posts phase events to the configured callback URL."""

    def __init__(self, callback_url: Optional[str] = None, timeout: float = 5.0):
        """Initialize report service.

        Args:
            callback_url: Endpoint receiving PhaseReport payloads; reporting is
                disabled when unset
            timeout: Per-request timeout in seconds
        """
        self.logger = logging.getLogger("devnet_upgrader.reporter")
        self.callback_url = callback_url
        self.timeout = timeout

    @property
    def enabled(self) -> bool:
        return bool(self.callback_url)

    async def report_phase(self, record: UpgradeRecord, message: str = "") -> None:
        """Send the record's current phase to the callback.

        Note:
            Failures are logged but not raised so reporting never blocks
            the upgrade
        """
        payload = PhaseReport(
            namespace=record.namespace,
            devnet=record.devnet,
            record=record.name,
            phase=record.phase,
            proposal_id=record.proposal_id,
            target_height=record.target_height,
            attempts=record.attempts,
            message=message,
            error=record.last_error,
        )

        if not self.enabled:
            self.logger.debug(f"No callback configured, skipping report for {record.ref}: {record.phase.value}")
            return

        self.logger.debug(f"Reporting {record.ref}: phase={record.phase.value}")

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    self.callback_url,
                    json=payload.model_dump(mode="json"),
                )
                response.raise_for_status()
                self.logger.debug("Report sent successfully")

        except httpx.HTTPError as e:
            self.logger.warning(
                f"Failed to report progress for {record.ref}: {e}. "
                f"Continuing upgrade..."
            )
        except Exception as e:
            self.logger.error(
                f"Unexpected error reporting progress for {record.ref}: {e}",
                exc_info=True,
            )
