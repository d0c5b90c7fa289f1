"""Cryptographic utilities for ACME protocol operations."""

import base64
import hashlib
import json
from typing import Any

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.x509.oid import NameOID

JWS_ALGORITHM = "RS256"

# RFC 5280 ub-common-name
MAX_COMMON_NAME_LENGTH = 64


def generate_rsa_key(key_size: int = 2048) -> rsa.RSAPrivateKey:
    """Generate an RSA private key.

    Args:
        key_size: Key size in bits.

    Returns:
        RSA private key.
    """
    return rsa.generate_private_key(
        public_exponent=65537,
        key_size=key_size,
    )


def private_key_to_pem(key: rsa.RSAPrivateKey) -> str:
    """Encode a private key as unencrypted PKCS#8 PEM."""
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("ascii")


def create_csr(
    key: rsa.RSAPrivateKey,
    domains: list[str],
) -> x509.CertificateSigningRequest:
    """Create a Certificate Signing Request (CSR).

    The first domain becomes the subject common name and every domain is
    listed in the Subject Alternative Name extension. A first domain longer
    than the 64 characters a common name allows leaves the subject empty.

    Args:
        key: Private key to sign the CSR.
        domains: List of domain names to include in the CSR.

    Returns:
        Certificate Signing Request.

    Raises:
        ValueError: If domains list is empty.
    """
    if not domains:
        raise ValueError("At least one domain is required")

    if len(domains[0]) <= MAX_COMMON_NAME_LENGTH:
        subject = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, domains[0])])
    else:
        subject = x509.Name([])
    san = x509.SubjectAlternativeName([x509.DNSName(domain) for domain in domains])

    return (
        x509.CertificateSigningRequestBuilder()
        .subject_name(subject)
        .add_extension(san, critical=False)
        .sign(key, hashes.SHA256())
    )


def encode_csr(csr: x509.CertificateSigningRequest) -> str:
    """Encode a CSR as base64url DER, the form the finalize payload expects."""
    return base64url_encode(csr.public_bytes(serialization.Encoding.DER))


def load_first_certificate(pem: bytes) -> x509.Certificate:
    """Load the leaf (first) certificate of a PEM chain.

    Raises:
        ValueError: If the data holds no parsable certificate.
    """
    certificates = x509.load_pem_x509_certificates(pem)
    if not certificates:
        raise ValueError("No certificate found in PEM data")
    return certificates[0]


def base64url_encode(data: bytes) -> str:
    """Base64url encode without padding."""
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _uint_to_base64url(n: int) -> str:
    """Encode an unsigned integer in its minimal big-endian form."""
    return base64url_encode(n.to_bytes((n.bit_length() + 7) // 8, byteorder="big"))


def get_jwk(key: rsa.RSAPrivateKey) -> dict[str, str]:
    """Get the public JWK (JSON Web Key) of an RSA key.

    Members are in lexicographic order, which is also the canonical
    form used for thumbprints.
    """
    public_numbers = key.public_key().public_numbers()
    return {
        "e": _uint_to_base64url(public_numbers.e),
        "kty": "RSA",
        "n": _uint_to_base64url(public_numbers.n),
    }


def key_thumbprint(key: rsa.RSAPrivateKey) -> str:
    """Compute the JWK thumbprint of a key (RFC 7638).

    Args:
        key: Private key to compute thumbprint for.

    Returns:
        Base64url-encoded SHA-256 thumbprint.
    """
    # Canonical JSON: required members only, sorted keys, no whitespace
    canonical = json.dumps(get_jwk(key), sort_keys=True, separators=(",", ":"))
    return base64url_encode(hashlib.sha256(canonical.encode("utf-8")).digest())


def sign_jws(
    key: rsa.RSAPrivateKey,
    payload: dict[str, Any] | str,
    url: str,
    nonce: str,
    kid: str | None = None,
) -> dict[str, str]:
    """Sign a payload as a flattened JWS for an ACME request (RFC 8555 Section 6.2).

    Args:
        key: Account key to sign with.
        payload: Payload to sign (dict for JSON, empty string for POST-as-GET).
        url: Exact URL of the ACME endpoint (RFC 8555 Section 6.4).
        nonce: Replay nonce (RFC 8555 Section 6.5).
        kid: Account URL. If None, the public JWK is embedded instead.

    Returns:
        JWS in flattened JSON serialization (protected, payload, signature).
    """
    protected: dict[str, Any] = {
        "alg": JWS_ALGORITHM,
        "nonce": nonce,
        "url": url,
    }
    if kid:
        protected["kid"] = kid
    else:
        protected["jwk"] = get_jwk(key)

    protected_b64 = base64url_encode(json.dumps(protected, separators=(",", ":")).encode("utf-8"))

    if payload == "":
        payload_b64 = ""
    else:
        payload_b64 = base64url_encode(json.dumps(payload, separators=(",", ":")).encode("utf-8"))

    signing_input = f"{protected_b64}.{payload_b64}".encode("ascii")
    signature = key.sign(signing_input, padding.PKCS1v15(), hashes.SHA256())

    return {
        "protected": protected_b64,
        "payload": payload_b64,
        "signature": base64url_encode(signature),
    }
