from __future__ import annotations

import base64
import json
import logging
import threading
import time
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Mapping, Optional

import requests
from jwt.algorithms import RSAAlgorithm
from jwt.exceptions import InvalidKeyError
from prometheus_client import Counter

from .settings import AppSettings, get_settings

logger = logging.getLogger(__name__)

AUTH_FAILURES = Counter(
    "docchat_auth_failures_total",
    "Bearer tokens rejected by the verifier",
    ["reason"],
)

SUPPORTED_ALGORITHM = "RS256"

_SUBJECT_CLAIMS = ("sub", "user_id", "userId", "sid")
_EMAIL_CLAIMS = ("email", "email_address", "primary_email")


class TokenVerificationError(Exception):
    """A bearer token was rejected. ``reason`` is a stable machine-readable code."""

    def __init__(self, reason: str, message: Optional[str] = None):
        super().__init__(message or reason)
        self.reason = reason


@dataclass(frozen=True)
class AuthenticatedIdentity:
    subject: str
    email: Optional[str] = None
    name: Optional[str] = None


@dataclass(frozen=True)
class _KeySnapshot:
    keys: Mapping[str, Dict[str, Any]]
    fetched_at: float
    expires_at: float


def _b64url_decode(raw: str) -> bytes:
    padding = "=" * (-len(raw) % 4)
    return base64.urlsafe_b64decode(raw + padding)


def fetch_jwks(url: str, timeout: float = 5.0) -> List[Dict[str, Any]]:
    try:
        resp = requests.get(url, timeout=timeout)
    except requests.RequestException as exc:
        raise TokenVerificationError("upstream-unavailable", f"JWKS fetch failed: {exc}") from exc
    if not resp.ok:
        raise TokenVerificationError("upstream-unavailable", f"JWKS fetch returned {resp.status_code}")
    try:
        body = resp.json()
    except ValueError as exc:
        raise TokenVerificationError("upstream-unavailable", "JWKS response is not JSON") from exc
    keys = body.get("keys") if isinstance(body, dict) else None
    if not isinstance(keys, list) or not keys:
        raise TokenVerificationError("upstream-unavailable", "JWKS contains no signing keys")
    return keys


class JwksCache:
    """Signing keys of the issuer, refreshed at most once per TTL.

    Readers only look at the current snapshot. Refreshes run behind a lock
    and re-check the snapshot first, so concurrent misses share one fetch.
    A forced refresh is ignored while the snapshot is younger than
    ``min_refresh_seconds``.
    """

    def __init__(
        self,
        url: str,
        *,
        ttl_seconds: float = 600,
        timeout: float = 5.0,
        fetcher: Optional[Callable[[str], List[Dict[str, Any]]]] = None,
        min_refresh_seconds: float = 30,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.url = url
        self.ttl_seconds = ttl_seconds
        self.min_refresh_seconds = min_refresh_seconds
        self._fetcher = fetcher or (lambda u: fetch_jwks(u, timeout=timeout))
        self._clock = clock
        self._snapshot: Optional[_KeySnapshot] = None
        self._lock = threading.Lock()

    def _is_fresh(self, snapshot: Optional[_KeySnapshot]) -> bool:
        return snapshot is not None and self._clock() < snapshot.expires_at

    def _recently_fetched(self, snapshot: _KeySnapshot) -> bool:
        return self._clock() - snapshot.fetched_at < self.min_refresh_seconds

    def get_keys(self, *, force: bool = False) -> Mapping[str, Dict[str, Any]]:
        observed = self._snapshot
        if not force and self._is_fresh(observed):
            return observed.keys
        with self._lock:
            current = self._snapshot
            # another caller refreshed while we waited
            if self._is_fresh(current) and (
                not force or current is not observed or self._recently_fetched(current)
            ):
                return current.keys
            self._snapshot = self._load()
            return self._snapshot.keys

    def _load(self) -> _KeySnapshot:
        try:
            raw_keys = self._fetcher(self.url)
        except TokenVerificationError:
            raise
        except Exception as exc:
            raise TokenVerificationError("upstream-unavailable", f"JWKS fetch failed: {exc}") from exc
        keys = {k["kid"]: k for k in raw_keys or [] if isinstance(k, dict) and isinstance(k.get("kid"), str)}
        if not keys:
            raise TokenVerificationError("upstream-unavailable", "JWKS contains no signing keys")
        logger.info("jwks refreshed url=%s keys=%s", self.url, len(keys))
        now = self._clock()
        return _KeySnapshot(keys=MappingProxyType(keys), fetched_at=now, expires_at=now + self.ttl_seconds)


def _decode_segment(segment: str) -> Dict[str, Any]:
    try:
        value = json.loads(_b64url_decode(segment).decode("utf-8"))
    except ValueError as exc:
        raise TokenVerificationError("malformed-token") from exc
    if not isinstance(value, dict):
        raise TokenVerificationError("malformed-token")
    return value


def _numeric_claim(payload: Dict[str, Any], name: str) -> Optional[float]:
    value = payload.get(name)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise TokenVerificationError("malformed-token", f"claim {name} is not numeric")
    return float(value)


def _first_str(payload: Dict[str, Any], names) -> Optional[str]:
    for name in names:
        value = payload.get(name)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def extract_identity(payload: Dict[str, Any]) -> AuthenticatedIdentity:
    subject = _first_str(payload, _SUBJECT_CLAIMS)
    if not subject:
        raise TokenVerificationError("missing-subject")

    email = _first_str(payload, _EMAIL_CLAIMS)
    if email is None:
        addresses = payload.get("email_addresses")
        if isinstance(addresses, list) and addresses and isinstance(addresses[0], dict):
            first = addresses[0].get("email_address")
            email = first.strip() if isinstance(first, str) and first.strip() else None

    name = _first_str(payload, ("name",))
    if name is None:
        parts = [payload.get("first_name"), payload.get("last_name")]
        name = " ".join(p.strip() for p in parts if isinstance(p, str) and p.strip()) or None

    return AuthenticatedIdentity(subject=subject, email=email, name=name)


class TokenVerifier:
    def __init__(
        self,
        *,
        issuer: str,
        jwks: JwksCache,
        audience: Optional[str] = None,
        authorized_party: Optional[str] = None,
        leeway_seconds: float = 0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.issuer = issuer
        self.jwks = jwks
        self.audience = audience
        self.authorized_party = authorized_party
        self.leeway_seconds = leeway_seconds
        self._clock = clock
        self._rsa = RSAAlgorithm(RSAAlgorithm.SHA256)

    def verify(self, token: str) -> AuthenticatedIdentity:
        try:
            payload = self._verified_payload(token)
            return extract_identity(payload)
        except TokenVerificationError as exc:
            AUTH_FAILURES.labels(reason=exc.reason).inc()
            logger.warning("bearer rejected reason=%s detail=%s", exc.reason, exc)
            raise

    def _verified_payload(self, token: str) -> Dict[str, Any]:
        parts = (token or "").split(".")
        if len(parts) != 3 or not all(parts[:2]):
            raise TokenVerificationError("malformed-token")
        header = _decode_segment(parts[0])
        payload = _decode_segment(parts[1])
        try:
            signature = _b64url_decode(parts[2])
        except ValueError as exc:
            raise TokenVerificationError("malformed-token") from exc

        if header.get("alg") != SUPPORTED_ALGORITHM:
            raise TokenVerificationError("unsupported-algorithm", f"alg={header.get('alg')!r}")

        kid = header.get("kid")
        if not isinstance(kid, str) or not kid:
            raise TokenVerificationError("malformed-token", "missing or invalid kid")
        jwk = self.jwks.get_keys().get(kid)
        if jwk is None:
            # rotated key: refresh once before giving up
            jwk = self.jwks.get_keys(force=True).get(kid)
        if jwk is None:
            raise TokenVerificationError("key-not-found", f"kid={kid!r}")

        try:
            public_key = RSAAlgorithm.from_jwk(jwk)
        except (InvalidKeyError, ValueError, KeyError) as exc:
            raise TokenVerificationError("signature-invalid", "unusable signing key") from exc
        signing_input = f"{parts[0]}.{parts[1]}".encode("utf-8")
        if not self._rsa.verify(signing_input, public_key, signature):
            raise TokenVerificationError("signature-invalid")

        self._check_time(payload)
        self._check_claims(payload)
        return payload

    def _check_time(self, payload: Dict[str, Any]) -> None:
        now = self._clock()
        exp = _numeric_claim(payload, "exp")
        if exp is not None and now >= exp + self.leeway_seconds:
            raise TokenVerificationError("token-expired")
        nbf = _numeric_claim(payload, "nbf")
        if nbf is not None and now < nbf - self.leeway_seconds:
            raise TokenVerificationError("token-not-yet-valid")

    def _check_claims(self, payload: Dict[str, Any]) -> None:
        if payload.get("iss") != self.issuer:
            raise TokenVerificationError("issuer-mismatch")
        if self.audience:
            aud = payload.get("aud")
            allowed = aud if isinstance(aud, list) else [aud]
            if self.audience not in allowed:
                raise TokenVerificationError("audience-mismatch")
        if self.authorized_party and payload.get("azp") != self.authorized_party:
            raise TokenVerificationError("authorized-party-mismatch")


def build_token_verifier(settings: Optional[AppSettings] = None) -> TokenVerifier:
    settings = settings or get_settings()
    if not settings.auth_issuer:
        logger.warning("AUTH_ISSUER is not configured; every bearer token will be rejected")
    jwks = JwksCache(
        settings.jwks_url,
        ttl_seconds=settings.auth_jwks_cache_ttl_seconds,
        timeout=settings.auth_jwks_timeout_seconds,
        min_refresh_seconds=settings.auth_jwks_min_refresh_seconds,
    )
    return TokenVerifier(
        issuer=settings.auth_issuer,
        jwks=jwks,
        audience=settings.auth_audience,
        authorized_party=settings.auth_authorized_party,
        leeway_seconds=settings.auth_leeway_seconds,
    )
