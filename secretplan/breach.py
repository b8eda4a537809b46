"""
SecretPlan - Breach Oracle Client

Checks a password against a breach corpus with the k-anonymity range
protocol (Pwned Passwords API v3):

    1. SHA-1 the password (uppercase hex, 40 chars)
    2. Send only the first 5 characters to the service
    3. Receive every known suffix sharing that prefix ("SUFFIX:COUNT" lines)
    4. Look for our own suffix locally

Neither the password nor the full hash ever leaves the process. A failed
lookup raises BreachCheckError; it is never reported as SAFE or UNKNOWN.
"""

import abc
import hashlib
import logging
from typing import Iterable, List, Optional, Tuple

import httpx

from . import config
from .crypto import constant_compare
from .errors import BreachCheckError
from .models import BreachState

logger = logging.getLogger(__name__)

_HEX = set("0123456789ABCDEF")


class RangeSource(abc.ABC):
    """Anything that can answer a hash-prefix range query."""

    @abc.abstractmethod
    def fetch_range(self, prefix: str) -> Iterable[Tuple[str, int]]:
        """
        Return (suffix, count) pairs for every known hash starting with `prefix`.

        Raises:
            BreachCheckError: the source could not be queried
        """

    def close(self) -> None:
        """Release network resources, if any."""


def parse_range_response(body: str) -> List[Tuple[str, int]]:
    """
    Parse a range response body.

    Each non-empty line is "SUFFIX" or "SUFFIX:COUNT". A missing count
    means present; padding entries carry count 0.

    Raises:
        BreachCheckError: a line can't be parsed
    """
    entries = []
    for line in body.splitlines():
        line = line.strip()
        if not line:
            continue
        suffix, _, count_str = line.partition(":")
        try:
            count = int(count_str) if count_str else 1
        except ValueError:
            raise BreachCheckError("malformed range response from breach service") from None
        entries.append((suffix.strip().upper(), count))
    return entries


class PwnedPasswordsSource(RangeSource):
    """
    HTTP range source for api.pwnedpasswords.com (or a compatible mirror).

    Usage:
        with PwnedPasswordsSource() as source:
            pairs = source.fetch_range("5BAA6")
    """

    def __init__(
        self,
        base_url: str = config.BREACH_API_URL,
        timeout: float = config.BREACH_TIMEOUT_SEC,
        user_agent: str = config.BREACH_USER_AGENT,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._client = httpx.Client(
            base_url=self.base_url,
            timeout=timeout,
            transport=transport,
            headers={
                # User-Agent is required by the API; padding hides the response size
                "User-Agent": user_agent,
                "Add-Padding": "true",
                "Accept": "text/plain",
            },
        )

    def fetch_range(self, prefix: str) -> List[Tuple[str, int]]:
        if len(prefix) != config.BREACH_PREFIX_LENGTH or not set(prefix.upper()) <= _HEX:
            raise ValueError(f"range prefix must be {config.BREACH_PREFIX_LENGTH} hex characters")

        try:
            response = self._client.get(f"/range/{prefix.upper()}")
        except httpx.TimeoutException as exc:
            raise BreachCheckError("breach service timed out") from exc
        except httpx.HTTPError as exc:
            raise BreachCheckError(f"breach service request failed: {exc}") from exc

        if response.status_code != 200:
            raise BreachCheckError(f"breach service returned HTTP {response.status_code}")

        return parse_range_response(response.text)

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "PwnedPasswordsSource":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


class BreachOracleClient:
    """
    k-anonymity breach check over a RangeSource.

    Usage:
        oracle = BreachOracleClient()
        state = oracle.check("hunter2")   # BreachState.SAFE / COMPROMISED
    """

    def __init__(self, source: Optional[RangeSource] = None):
        self.source = source or PwnedPasswordsSource()

    @staticmethod
    def hash_password(password: str) -> str:
        """Uppercase SHA-1 hex digest (the lookup key format of the corpus)."""
        return hashlib.sha1(password.encode("utf-8")).hexdigest().upper()

    def check(self, password: str) -> BreachState:
        """
        Look the password up without disclosing it.

        Returns:
            BreachState.COMPROMISED if the hash suffix is listed with a
            non-zero count, BreachState.SAFE otherwise

        Raises:
            BreachCheckError: the source failed or answered garbage
        """
        full_hash = self.hash_password(password)
        prefix = full_hash[:config.BREACH_PREFIX_LENGTH]
        suffix = full_hash[config.BREACH_PREFIX_LENGTH:].encode("ascii")

        try:
            candidates = list(self.source.fetch_range(prefix))
        except BreachCheckError as exc:
            logger.warning("Breach check failed for prefix %s...: %s", prefix[:3], exc)
            raise
        except Exception as exc:
            logger.warning("Breach check failed for prefix %s...: %s", prefix[:3], exc)
            raise BreachCheckError(f"breach lookup failed: {exc}") from exc

        # Scan every candidate so the time taken doesn't depend on where we match
        found = False
        for candidate, count in candidates:
            if constant_compare(candidate.upper().encode("ascii", "replace"), suffix) and count > 0:
                found = True

        if found:
            logger.warning("Password hash found in breach corpus (prefix %s...)", prefix[:3])
            return BreachState.COMPROMISED
        return BreachState.SAFE

    def close(self) -> None:
        self.source.close()
