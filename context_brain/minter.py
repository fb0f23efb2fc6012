from __future__ import annotations

import logging
import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Generic, Hashable, Optional, Tuple, TypeVar

import requests

logger = logging.getLogger(__name__)

# Contexts are synthetic persons: the entity type is always P. Lifecycle provenance is metadata.
CONTEXT_ENTITY_TYPE = "P"

FALLBACK_VERSION = "03"
FALLBACK_GENERATION = "1"
FALLBACK_LOCALE = "USA"


class MintAuthorityError(Exception):
    """The identity authority could not issue an identifier."""


K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


class TTLCache(Generic[K, V]):
    """
    Small time-bounded cache owned by whoever constructs it.

    The clock is injected so expiry is testable without sleeping.
    """

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl_seconds = float(ttl_seconds)
        self._clock = clock
        self._items: Dict[K, Tuple[float, V]] = {}

    def get(self, key: K) -> Optional[V]:
        hit = self._items.get(key)
        if hit is None:
            return None
        expires_at, value = hit
        if self._clock() >= expires_at:
            self._items.pop(key, None)
            return None
        return value

    def set(self, key: K, value: V) -> None:
        self._items[key] = (self._clock() + self.ttl_seconds, value)

    def clear(self) -> None:
        self._items.clear()


@dataclass(frozen=True)
class MintResult:
    """
    `authoritative` is False for locally generated identifiers, which must be
    reconciled with the authority later.
    """
    chitty_id: str
    authoritative: bool
    fallback_reason: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


def fallback_chitty_id(entity_type: str, now: Optional[datetime] = None) -> str:
    """
    Local identifier in the canonical layout VV-G-LLL-SSSS-T-YYMM-C-XX.
    Always carries the entity type so it stays recognisable for reconciliation.
    """
    now = now or datetime.now(timezone.utc)
    sequence = f"{secrets.randbelow(10000):04d}"
    variant = f"{secrets.randbelow(100):02d}"
    year_month = now.strftime("%y%m")
    return f"{FALLBACK_VERSION}-{FALLBACK_GENERATION}-{FALLBACK_LOCALE}-{sequence}-{entity_type}-{year_month}-0-{variant}"


class IdentityMinter:
    """
    Client for the external identity authority (POST /api/v1/mint).

    This is the only component allowed to produce identifiers. Any failure
    (network, non-2xx, malformed body) falls back to fallback_chitty_id();
    the authority is then skipped for `retry_after_seconds`.
    """

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        timeout: float = 10.0,
        retry_after_seconds: float = 30.0,
        session: Optional[requests.Session] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.base_url = base_url
        self.token = token
        self.timeout = timeout
        self._session = session or requests.Session()
        self._unreachable: TTLCache[str, str] = TTLCache(retry_after_seconds, clock=clock)

    def _request_mint(self, entity_type: str, metadata: Dict[str, Any]) -> str:
        url = f"{self.base_url.rstrip('/')}/api/v1/mint"
        payload: Dict[str, Any] = {
            "entity_type": entity_type,
            "support_type": metadata.get("support_type") or "development",
            "project_path": metadata.get("project_path"),
            "organization": metadata.get("organization"),
            "metadata": {
                "source": "context-brain",
                "lifecycle": metadata.get("lifecycle"),
                "operation": metadata.get("operation"),
                "source_contexts": metadata.get("source_contexts"),
            },
        }
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.token or ''}",
        }

        try:
            resp = self._session.post(url, json=payload, headers=headers, timeout=self.timeout)
        except requests.RequestException as e:
            raise MintAuthorityError(f"Error contacting identity authority: {e}") from e

        if resp.status_code < 200 or resp.status_code >= 300:
            raise MintAuthorityError(f"Identity authority returned {resp.status_code}")

        try:
            data = resp.json()
        except ValueError as e:
            raise MintAuthorityError(f"Invalid JSON from identity authority: {e}") from e

        chitty_id = (data.get("chitty_id") or data.get("id")) if isinstance(data, dict) else None
        if not chitty_id or not isinstance(chitty_id, str):
            raise MintAuthorityError("Identity authority response carried no chitty_id")
        return chitty_id

    def mint(self, entity_type: str = CONTEXT_ENTITY_TYPE, metadata: Optional[Dict[str, Any]] = None) -> MintResult:
        meta = dict(metadata or {})

        skipped = self._unreachable.get(self.base_url)
        if skipped is not None:
            logger.debug("Identity authority cooling down (%s), minting locally", skipped)
            return MintResult(fallback_chitty_id(entity_type), authoritative=False, fallback_reason=skipped, metadata=meta)

        try:
            chitty_id = self._request_mint(entity_type, meta)
        except MintAuthorityError as exc:
            reason = str(exc)
            self._unreachable.set(self.base_url, reason)
            logger.warning("Identity authority unavailable, using local fallback: %s", reason)
            return MintResult(fallback_chitty_id(entity_type), authoritative=False, fallback_reason=reason, metadata=meta)

        return MintResult(chitty_id, authoritative=True, metadata=meta)
