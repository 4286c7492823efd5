"""
Webhook signature verification.

The gateway signs notifications with HMAC-SHA256 and sends the result in up
to two headers: X-Content-HMAC over the raw (still URL-encoded) body and
Content-HMAC over the decoded body. Senders are inconsistent about the exact
bytes they sign and about how the shared secret is encoded, so verification
walks an ordered list of (key derivation, body normalization) candidates and
accepts the notification if any header matches any candidate.

Adding or removing a tolerated variant is one entry in KEY_DERIVATIONS or
BODY_NORMALIZATIONS.
"""
import base64
import binascii
import hashlib
import hmac
import re
from dataclasses import dataclass
from typing import Callable, Iterator, List, Mapping, Optional, Tuple
from urllib.parse import parse_qsl, unquote_plus

SIGNATURE_HEADERS = ("x-content-hmac", "content-hmac")

FORM_CONTENT_TYPE = "application/x-www-form-urlencoded"

_BASE64_RE = re.compile(r"^[A-Za-z0-9+/_-]+={0,2}$")
_HEX_RE = re.compile(r"^(?:[0-9a-fA-F]{2})+$")


def _key_as_is(secret: str) -> Optional[bytes]:
    return secret.encode("utf-8")


def _key_from_base64(secret: str) -> Optional[bytes]:
    if len(secret) < 16 or not _BASE64_RE.match(secret):
        return None
    padded = secret + "=" * (-len(secret) % 4)
    try:
        if "-" in secret or "_" in secret:
            return base64.urlsafe_b64decode(padded)
        return base64.b64decode(padded, validate=True)
    except (binascii.Error, ValueError):
        return None


def _key_from_hex(secret: str) -> Optional[bytes]:
    if len(secret) < 32 or not _HEX_RE.match(secret):
        return None
    return bytes.fromhex(secret)


def _body_raw(body: bytes, is_form: bool) -> Optional[bytes]:
    return body


def _body_rstripped(body: bytes, is_form: bool) -> Optional[bytes]:
    stripped = body.rstrip()
    return stripped if stripped != body else None


def _decode_text(body: bytes) -> Optional[str]:
    try:
        return body.decode("utf-8")
    except UnicodeDecodeError:
        return None


def _body_url_decoded(body: bytes, is_form: bool) -> Optional[bytes]:
    text = _decode_text(body.rstrip()) if is_form else None
    if text is None:
        return None
    return unquote_plus(text).encode("utf-8")


def _body_form_canonical(body: bytes, is_form: bool) -> Optional[bytes]:
    text = _decode_text(body.rstrip()) if is_form else None
    if text is None:
        return None
    fields = parse_qsl(text, keep_blank_values=True)
    if not fields:
        return None
    return "&".join(f"{key}={value}" for key, value in fields).encode("utf-8")


KeyDerivation = Callable[[str], Optional[bytes]]
BodyNormalization = Callable[[bytes, bool], Optional[bytes]]

KEY_DERIVATIONS: Tuple[Tuple[str, KeyDerivation], ...] = (
    ("as_is", _key_as_is),
    ("base64", _key_from_base64),
    ("hex", _key_from_hex),
)

BODY_NORMALIZATIONS: Tuple[Tuple[str, BodyNormalization], ...] = (
    ("raw", _body_raw),
    ("rstripped", _body_rstripped),
    ("url_decoded", _body_url_decoded),
    ("form_canonical", _body_form_canonical),
)


@dataclass(frozen=True)
class SignatureCandidate:
    key_variant: str
    body_variant: str
    key: bytes
    body: bytes


@dataclass(frozen=True)
class SignatureMatch:
    header: str
    key_variant: str
    body_variant: str


def compute_signature(key: bytes, body: bytes) -> str:
    """Base64 HMAC-SHA256, the encoding the gateway sends."""
    return base64.b64encode(hmac.new(key, body, hashlib.sha256).digest()).decode("ascii")


def encoded_digests(digest: bytes) -> Tuple[bytes, ...]:
    """Accepted textual encodings of one digest."""
    std = base64.b64encode(digest)
    urlsafe = base64.urlsafe_b64encode(digest)
    return (
        std,
        std.rstrip(b"="),
        urlsafe,
        urlsafe.rstrip(b"="),
        binascii.hexlify(digest),
    )


def is_form_encoded(body: bytes, content_type: Optional[str]) -> bool:
    ct = (content_type or "").lower()
    if FORM_CONTENT_TYPE in ct:
        return True
    if "json" in ct:
        return False
    stripped = body.lstrip()
    return bool(stripped) and stripped[:1] not in (b"{", b"[") and b"=" in stripped


def get_header(headers: Mapping[str, str], name: str) -> Optional[str]:
    """Case-insensitive header lookup over plain dicts and Starlette headers."""
    value = headers.get(name)
    if value is None:
        lowered = name.lower()
        for key, candidate in headers.items():
            if key.lower() == lowered:
                value = candidate
                break
    if value is None:
        return None
    value = value.strip()
    return value or None


class SignatureVerifier:
    """Verifies inbound notifications against the shared webhook secret."""

    def __init__(self, secret: str):
        secret = (secret or "").strip()
        if not secret:
            raise ValueError("webhook secret is required")

        keys: List[Tuple[str, bytes]] = []
        for name, derive in KEY_DERIVATIONS:
            key = derive(secret)
            if key and all(key != existing for _, existing in keys):
                keys.append((name, key))
        self._keys = keys

    @property
    def key_variants(self) -> List[str]:
        return [name for name, _ in self._keys]

    def candidates(self, raw_body: bytes, content_type: Optional[str] = None) -> Iterator[SignatureCandidate]:
        is_form = is_form_encoded(raw_body, content_type)
        seen_bodies: List[bytes] = []
        bodies: List[Tuple[str, bytes]] = []
        for name, normalize in BODY_NORMALIZATIONS:
            body = normalize(raw_body, is_form)
            if body is None or body in seen_bodies:
                continue
            seen_bodies.append(body)
            bodies.append((name, body))

        for key_name, key in self._keys:
            for body_name, body in bodies:
                yield SignatureCandidate(key_variant=key_name, body_variant=body_name, key=key, body=body)

    def match(
        self,
        raw_body: bytes,
        headers: Mapping[str, str],
        content_type: Optional[str] = None,
    ) -> Optional[SignatureMatch]:
        """Return the first (header, key, body) combination that verifies."""
        provided = []
        for header in SIGNATURE_HEADERS:
            value = get_header(headers, header)
            if value:
                provided.append((header, value.encode("utf-8"), value.lower().encode("utf-8")))
        if not provided:
            return None

        if content_type is None:
            content_type = get_header(headers, "content-type")

        for candidate in self.candidates(raw_body, content_type):
            digest = hmac.new(candidate.key, candidate.body, hashlib.sha256).digest()
            expected = encoded_digests(digest)
            hex_digest = expected[-1]
            for header, value, lowered in provided:
                # hex is compared case-insensitively, base64 is case-sensitive
                if any(hmac.compare_digest(value, encoded) for encoded in expected) or hmac.compare_digest(lowered, hex_digest):
                    return SignatureMatch(
                        header=header,
                        key_variant=candidate.key_variant,
                        body_variant=candidate.body_variant,
                    )
        return None

    def verify(
        self,
        raw_body: bytes,
        headers: Mapping[str, str],
        content_type: Optional[str] = None,
    ) -> bool:
        return self.match(raw_body, headers, content_type) is not None
