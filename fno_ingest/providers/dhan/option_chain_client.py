"""
Dhan v2 option chain client.

Both endpoints are POSTs authenticated with the ``access-token`` and
``client-id`` headers. Dhan allows roughly one option chain call every three
seconds per account, so every call goes through the shared Dhan pacing gate.
"""

import logging
from typing import List

from fno_ingest.providers.base.pacing import PacingGate
from fno_ingest.providers.base.provider import AuthenticationError, MalformedPayloadError
from fno_ingest.providers.base.rest_client import RestClient
from fno_ingest.providers.config.provider_settings import DhanSettings
from fno_ingest.providers.dhan.transformers import is_valid_expiry, normalize_option_chain
from fno_ingest.schemas.market_data import OptionChainSnapshot

# Set up logging
logger = logging.getLogger(__name__)


class DhanOptionChainClient(RestClient):
    """REST client for the Dhan option chain endpoints."""

    QUEUE_ID = "option_chain"

    def __init__(self, settings: DhanSettings, gate: PacingGate):
        """
        Initialize the client.

        Args:
            settings: Dhan provider settings (credentials, attempts, timeouts)
            gate: Pacing gate shared by every Dhan caller
        """
        super().__init__(settings.API_BASE_URL, settings, gate, headers=settings.get_auth_headers())
        self.dhan_settings = settings

    def _require_credentials(self) -> None:
        if not self.dhan_settings.has_credentials:
            raise AuthenticationError("Missing DHAN_ACCESS_TOKEN or DHAN_CLIENT_ID")

    async def get_expiry_list(self, underlying_scrip: int, underlying_seg: str) -> List[str]:
        """
        Fetch the expiries available for an underlying.

        Args:
            underlying_scrip: Dhan security id of the underlying
            underlying_seg: Dhan exchange segment, e.g. ``IDX_I``

        Returns:
            Valid ``YYYY-MM-DD`` expiries, in upstream order

        Raises:
            MalformedPayloadError: If the response carries no list
            ProviderError: Typed upstream failure after retries
        """
        self._require_credentials()
        payload = await self.with_retries(
            "POST",
            "optionchain/expirylist",
            self.QUEUE_ID,
            attempts=self.dhan_settings.EXPIRY_LIST_ATTEMPTS,
            data={"UnderlyingScrip": underlying_scrip, "UnderlyingSeg": underlying_seg},
        )
        raw = payload.get("data")
        if not isinstance(raw, list):
            raise MalformedPayloadError("Expiry list response has no data list")
        return [e for e in raw if is_valid_expiry(e)]

    async def get_option_chain(
        self,
        underlying_scrip: int,
        underlying_seg: str,
        expiry: str
    ) -> OptionChainSnapshot:
        """
        Fetch and normalize the option chain for one expiry.

        Args:
            underlying_scrip: Dhan security id of the underlying
            underlying_seg: Dhan exchange segment
            expiry: Expiry date, ``YYYY-MM-DD``

        Returns:
            Normalized option chain snapshot

        Raises:
            MalformedPayloadError: If the response carries no chain
            ProviderError: Typed upstream failure after retries
        """
        self._require_credentials()
        payload = await self.with_retries(
            "POST",
            "optionchain",
            self.QUEUE_ID,
            attempts=self.dhan_settings.OPTION_CHAIN_ATTEMPTS,
            data={
                "UnderlyingScrip": underlying_scrip,
                "UnderlyingSeg": underlying_seg,
                "Expiry": expiry,
            },
        )
        return normalize_option_chain(payload)
