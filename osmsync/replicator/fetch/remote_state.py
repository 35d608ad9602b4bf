"""
Producer state polling.

The producer publishes ``<source>/state.txt`` containing a
``sequenceNumber=<n>`` line with the latest available sequence ID.

The client distinguishes two situations:
    UNVERIFIED  the source never answered in this process: a failure is a
                configuration error and is raised immediately
    VERIFIED    the source worked before: a failure is an outage, retried
                after a fixed delay for as long as it takes

Invariants:
    - The transition UNVERIFIED -> VERIFIED happens once, on the first parse
    - Outage retries never give up; only cancellation ends them
"""

from __future__ import annotations

import logging
from enum import Enum

from ..errors import ConfigurationError, ReplicationError, ShutdownRequested
from ..runtime.cancellation import CancellationToken
from .http import HttpFetcher

logger = logging.getLogger(__name__)

STATE_DOCUMENT = "state.txt"


class SourceState(Enum):
    UNVERIFIED = "unverified"
    VERIFIED = "verified"


class StateParseError(ReplicationError):
    """state.txt did not contain a usable sequence number."""

    pass


def parse_sequence_number(text: str) -> int:
    """Extract the ``sequenceNumber`` value from a state document.

    Raises:
        StateParseError: If the line is missing or not an integer
    """
    for line in text.splitlines():
        if line.startswith("sequenceNumber"):
            _, _, value = line.partition("=")
            value = value.strip()
            if value.isdigit():
                return int(value)
            raise StateParseError(f"Invalid sequenceNumber line: {line!r}")
    raise StateParseError("state.txt has no sequenceNumber line")


class RemoteStateClient:
    """Polls the producer for its latest sequence ID.

    Example:
        >>> client = RemoteStateClient(http, "https://example.org/replication/minute", token)
        >>> latest = await client.latest_available()
    """

    def __init__(
        self,
        http: HttpFetcher,
        source_url: str,
        token: CancellationToken,
        outage_retry_delay: float = 60.0,
    ) -> None:
        self.http = http
        self.source_url = source_url.rstrip("/")
        self.token = token
        self.outage_retry_delay = outage_retry_delay
        self.state = SourceState.UNVERIFIED

    @property
    def state_url(self) -> str:
        return f"{self.source_url}/{STATE_DOCUMENT}"

    @property
    def verified(self) -> bool:
        return self.state is SourceState.VERIFIED

    async def latest_available(self) -> int:
        """Latest sequence ID published by the producer.

        Raises:
            ConfigurationError: If the source was never reachable
            ShutdownRequested: If cancelled while waiting out an outage
        """
        while True:
            self.token.raise_if_cancelled()
            try:
                text = await self.http.fetch_text(self.state_url)
                sequence_number = parse_sequence_number(text)
            except ShutdownRequested:
                raise
            except ReplicationError as e:
                if not self.verified:
                    logger.error(f"Cannot reach replication source: {self.source_url}")
                    logger.error("Please verify the source URL is correct")
                    raise ConfigurationError(
                        f"Replication source unreachable: {self.state_url}: {e}"
                    ) from e

                logger.warning(
                    "Unable to reach replication source (likely network outage), "
                    f"retrying in {self.outage_retry_delay:g}s",
                    extra={"url": self.state_url, "error": str(e)},
                )
                if await self.token.sleep(self.outage_retry_delay):
                    raise ShutdownRequested("Shutdown during outage wait")
                continue

            if not self.verified:
                self.state = SourceState.VERIFIED
                logger.info(
                    "Replication source verified and operational",
                    extra={"url": self.source_url, "sequence_number": sequence_number},
                )
            return sequence_number
