from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, List, Optional, Sequence

from recordkeep.config import Settings
from recordkeep.logging import get_logger
from recordkeep.service.errors import MalformedCredentialError, SessionExpiredError
from recordkeep.storage.models import Claim

logger = get_logger(__name__)


def claim_values(claims: Sequence[Claim], key: str) -> List[str]:
    return [value for claim_key, value in claims if claim_key == key]


def first_claim(claims: Sequence[Claim], key: str) -> Optional[str]:
    values = claim_values(claims, key)
    return values[0] if values else None


class CredentialIssuer:
    """Mints and reads HS256 access tokens and opaque refresh values.

    The claim list is carried verbatim (order and duplicates preserved) under
    the ``claims`` key; ``sub`` is mirrored at the top level for clients that
    only read registered claims.
    """

    algorithm = "HS256"

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        # Allowance for small clock skew across nodes
        self._clock_skew_leeway = timedelta(seconds=settings.clock_skew_seconds)

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(),
                signing_input.encode(),
                hashlib.sha256,
            ).digest()
        )

    def issue_access(self, claims: Sequence[Claim], *, now: Optional[datetime] = None) -> str:
        issued = now or self._now()
        expires = issued + timedelta(minutes=self.settings.access_token_ttl_minutes)
        payload: dict[str, Any] = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "iat": int(issued.timestamp()),
            "exp": int(expires.timestamp()),
            "jti": str(uuid.uuid4()),
            "claims": [[key, value] for key, value in claims],
        }
        subject = first_claim(claims, "sub")
        if subject:
            payload["sub"] = subject
        header = {"alg": self.algorithm, "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def issue_refresh_value(self) -> str:
        return secrets.token_urlsafe(32)

    def _verified_payload(self, token: str) -> dict[str, Any]:
        if not token or not isinstance(token, str):
            raise MalformedCredentialError("access token missing")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise MalformedCredentialError("access token is not a compact JWS") from None

        # Reject anything but HS256 to prevent algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_header_decode_failed", error=str(exc))
            raise MalformedCredentialError("access token header unreadable") from exc
        if not isinstance(header, dict) or header.get("alg") != self.algorithm:
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise MalformedCredentialError("unsupported token algorithm")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            raise MalformedCredentialError("access token signature mismatch")
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise MalformedCredentialError("access token payload unreadable") from exc
        if not isinstance(payload, dict):
            raise MalformedCredentialError("access token payload unreadable")
        if payload.get("iss") != self.settings.jwt_issuer:
            raise MalformedCredentialError("access token issuer mismatch")
        aud = payload.get("aud")
        valid_aud = False
        if isinstance(aud, str):
            valid_aud = aud == self.settings.jwt_audience
        elif isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        if not valid_aud:
            raise MalformedCredentialError("access token audience mismatch")
        return payload

    def _claims_from_payload(self, payload: dict[str, Any]) -> List[Claim]:
        raw = payload.get("claims")
        if not isinstance(raw, list):
            raise MalformedCredentialError("access token carries no claims")
        claims: List[Claim] = []
        for pair in raw:
            if not isinstance(pair, list) or len(pair) != 2:
                raise MalformedCredentialError("access token claim is malformed")
            claims.append((str(pair[0]), str(pair[1])))
        return claims

    def recover_claims(self, token: str) -> List[Claim]:
        """Return the claims of an authentic token, expired or not."""
        return self._claims_from_payload(self._verified_payload(token))

    def decode_access(self, token: str) -> List[Claim]:
        """Return the claims of an authentic, unexpired token."""
        payload = self._verified_payload(token)
        exp = payload.get("exp")
        try:
            exp_ts = float(exp)
        except (TypeError, ValueError):
            raise MalformedCredentialError("access token has no expiry") from None
        if exp_ts <= self._now().timestamp() - self._clock_skew_leeway.total_seconds():
            raise SessionExpiredError("access token expired")
        return self._claims_from_payload(payload)


__all__ = ["CredentialIssuer", "claim_values", "first_claim"]
