"""HTTP client for the mint endpoint.

Used by storefront backends and operator tooling to talk to the mint API.
Failures are classified so callers can tell a request worth retrying from
one that will never succeed.
"""
import logging
from decimal import Decimal
from typing import Any, Dict, Optional, Sequence, Union

import requests

from config import settings_conf

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10

class MintClientError(Exception):
    """Base exception for mint client errors"""
    def __init__(self, message: str, status_code: Optional[int] = None, action: Optional[str] = None):
        self.detail = message
        self.status_code = status_code
        self.action = action
        super().__init__(f"[{status_code}] {action}: {message}" if status_code else message)

class TransientConfirmError(MintClientError):
    """Raised when the server could not be reached or failed with a 5xx"""
    pass

class ReservationMissingError(MintClientError):
    """Raised when the server does not know the reservation"""
    pass

class RejectedRequestError(MintClientError):
    """Raised when the server refuses the request outright"""
    pass

Signature = Union[str, bytes, bytearray, Sequence[int]]

def encode_signature(signature: Signature) -> Union[str, list]:
    """JSON form of a signature. Raw bytes travel as a list of byte values."""
    if isinstance(signature, str):
        return signature
    return list(bytes(signature))

def _json_value(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    return value

class MintClient:
    """Client for POST /mint"""

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT,
        session: Optional[requests.Session] = None
    ):
        """Initialize the client.

        Args:
            base_url: API base URL. Defaults to the api_url setting.
            timeout: Request timeout in seconds
            session: Optional session to reuse
        """
        self.base_url = (base_url or settings_conf['api_url']).rstrip('/')
        self.url = f"{self.base_url}/mint"
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers['content-type'] = 'application/json'

    def _post(self, action: str, **fields: Any) -> Dict[str, Any]:
        """Send one action to the mint endpoint.

        Raises:
            TransientConfirmError: Connection failure, timeout or 5xx response
            ReservationMissingError: 404 response
            RejectedRequestError: Any other 4xx response
        """
        payload = {'action': action}
        payload.update({key: _json_value(value) for key, value in fields.items() if value is not None})

        try:
            response = self.session.post(self.url, json=payload, timeout=self.timeout)
        except requests.exceptions.Timeout as e:
            raise TransientConfirmError(
                f"Request timed out after {self.timeout} seconds", action=action
            ) from e
        except requests.exceptions.ConnectionError as e:
            raise TransientConfirmError(
                f"Failed to connect to mint API at {self.url}", action=action
            ) from e
        except requests.exceptions.RequestException as e:
            raise TransientConfirmError(f"Request failed: {str(e)}", action=action) from e

        try:
            body = response.json()
        except ValueError:
            body = {}
        detail = body.get('detail') if isinstance(body, dict) else None
        message = str(detail or response.reason or 'Unknown error')

        if response.status_code >= 500:
            raise TransientConfirmError(message, response.status_code, action)
        if response.status_code == 404:
            raise ReservationMissingError(message, response.status_code, action)
        if response.status_code >= 400:
            raise RejectedRequestError(message, response.status_code, action)
        if not isinstance(body, dict):
            raise TransientConfirmError("Invalid response format", response.status_code, action)
        return body

    def check(self, wallet: str, collection_address: str, quantity: int = 1, phase: Optional[str] = None) -> Dict[str, Any]:
        return self._post('check', wallet=wallet, collectionAddress=collection_address, quantity=quantity, phase=phase)

    def reserve(
        self,
        wallet: str,
        collection_address: str,
        quantity: int = 1,
        phase: Optional[str] = None,
        price: Optional[Union[Decimal, float]] = None,
        network: str = 'mainnet-beta'
    ) -> Dict[str, Any]:
        return self._post(
            'reserve', wallet=wallet, collectionAddress=collection_address,
            quantity=quantity, phase=phase, price=price, network=network
        )

    def confirm(self, reservation_id: str, signature: Signature, nft_address: Optional[str] = None) -> Dict[str, Any]:
        return self._post(
            'confirm', reservationId=str(reservation_id),
            signature=encode_signature(signature), nftAddress=nft_address
        )

    def fail(self, reservation_id: str) -> Dict[str, Any]:
        return self._post('fail', reservationId=str(reservation_id))

    def confirm_direct(
        self,
        collection_address: str,
        wallet: str,
        signature: Signature,
        quantity: int = 1,
        price: Optional[Union[Decimal, float]] = None,
        network: str = 'mainnet-beta',
        nft_address: Optional[str] = None,
        phase_name: Optional[str] = None
    ) -> Dict[str, Any]:
        return self._post(
            'confirm_direct', collectionAddress=collection_address, wallet=wallet,
            signature=encode_signature(signature), quantity=quantity, price=price,
            network=network, nftAddress=nft_address, phaseName=phase_name
        )

    def close(self):
        self.session.close()

__all__ = [
    'MintClient', 'MintClientError', 'TransientConfirmError',
    'ReservationMissingError', 'RejectedRequestError', 'encode_signature'
]
