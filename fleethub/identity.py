from __future__ import annotations

import base64
import hashlib
import hmac
import json
import os
import ssl
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _b64url_decode(value: str) -> bytes:
    padding = "=" * ((4 - len(value) % 4) % 4)
    return base64.urlsafe_b64decode(value + padding)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_cluster_ca(pki_dir: str) -> tuple[str, str]:
    path = Path(pki_dir)
    path.mkdir(parents=True, exist_ok=True)
    key_path = path / "hub-ca.key"
    cert_path = path / "hub-ca.crt"

    if key_path.exists() and cert_path.exists():
        return key_path.read_text(), cert_path.read_text()

    key = ec.generate_private_key(ec.SECP256R1())
    subject = x509.Name(
        [
            x509.NameAttribute(NameOID.COMMON_NAME, "FleetHub Hub CA"),
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, "FleetHub"),
        ]
    )
    now = _utcnow()
    cert = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(subject)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(minutes=1))
        .not_valid_after(now + timedelta(days=3650))
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .add_extension(x509.SubjectKeyIdentifier.from_public_key(key.public_key()), critical=False)
        .sign(private_key=key, algorithm=hashes.SHA256())
    )

    key_pem = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("utf-8")
    cert_pem = cert.public_bytes(serialization.Encoding.PEM).decode("utf-8")
    key_path.write_text(key_pem)
    cert_path.write_text(cert_pem)
    os.chmod(key_path, 0o600)
    return key_pem, cert_pem


def create_identity_token(
    *,
    identity_name: str,
    namespace: str,
    secret_key: str,
    ttl_seconds: int,
    now: Optional[int] = None,
) -> str:
    issued_at = now if now is not None else int(time.time())
    payload = {
        "sub": identity_name,
        "ns": namespace,
        "iat": issued_at,
        "exp": issued_at + ttl_seconds,
    }
    payload_json = json.dumps(payload, separators=(",", ":"), sort_keys=True).encode("utf-8")
    payload_b64 = _b64url_encode(payload_json)
    signature = hmac.new(secret_key.encode("utf-8"), payload_b64.encode("ascii"), hashlib.sha256).digest()
    return f"{payload_b64}.{_b64url_encode(signature)}"


def decode_identity_token(token: str, secret_key: str, *, now: Optional[int] = None) -> Optional[Dict[str, Any]]:
    try:
        payload_b64, signature_b64 = token.split(".", 1)
    except ValueError:
        return None
    expected_signature = hmac.new(
        secret_key.encode("utf-8"),
        payload_b64.encode("ascii", errors="replace"),
        hashlib.sha256,
    ).digest()
    try:
        actual_signature = _b64url_decode(signature_b64)
    except (ValueError, TypeError):
        return None
    if not hmac.compare_digest(actual_signature, expected_signature):
        return None
    try:
        payload = json.loads(_b64url_decode(payload_b64))
    except (ValueError, TypeError, json.JSONDecodeError):
        return None

    expires_at = payload.get("exp")
    identity_name = payload.get("sub")
    namespace = payload.get("ns")
    if not isinstance(expires_at, int) or not isinstance(identity_name, str) or not isinstance(namespace, str):
        return None
    current = now if now is not None else int(time.time())
    if expires_at < current:
        return None
    return payload


def ssl_context_from_bundle(ca_bundle: bytes) -> ssl.SSLContext:
    """Build a client context that trusts only the hub CA bundle."""
    context = ssl.create_default_context()
    context.load_verify_locations(cadata=ca_bundle.decode("utf-8"))
    return context
