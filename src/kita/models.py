"""Pydantic models for ACME protocol resources and controller data."""

from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum
from typing import Any

from cryptography.hazmat.primitives.asymmetric import rsa
from pydantic import BaseModel, ConfigDict, Field

# =============================================================================
# ACME Protocol Enums (RFC 8555)
# =============================================================================


class ChallengeStatus(StrEnum):
    """Challenge statuses (RFC 8555 Section 7.1.6)."""

    PENDING = "pending"
    PROCESSING = "processing"
    VALID = "valid"
    INVALID = "invalid"


class AuthorizationStatus(StrEnum):
    """Authorization statuses (RFC 8555 Section 7.1.6)."""

    PENDING = "pending"
    VALID = "valid"
    INVALID = "invalid"
    DEACTIVATED = "deactivated"
    EXPIRED = "expired"
    REVOKED = "revoked"


class OrderStatus(StrEnum):
    """Order statuses (RFC 8555 Section 7.1.6)."""

    PENDING = "pending"
    READY = "ready"
    PROCESSING = "processing"
    VALID = "valid"
    INVALID = "invalid"


class AccountStatus(StrEnum):
    """Account statuses (RFC 8555 Section 7.1.6)."""

    VALID = "valid"
    DEACTIVATED = "deactivated"
    REVOKED = "revoked"


class ChallengeType(StrEnum):
    """Challenge types (RFC 8555 Section 8)."""

    HTTP_01 = "http-01"
    DNS_01 = "dns-01"
    TLS_ALPN_01 = "tls-alpn-01"


# =============================================================================
# ACME resources
# =============================================================================


class Directory(BaseModel):
    """ACME directory resource (RFC 8555 Section 7.1.1)."""

    new_nonce: str = Field(alias="newNonce")
    new_account: str = Field(alias="newAccount")
    new_order: str = Field(alias="newOrder")
    # Only present on servers supporting pre-authorization
    new_authz: str | None = Field(default=None, alias="newAuthz")
    meta: dict[str, Any] | None = None

    model_config = ConfigDict(populate_by_name=True)


class Identifier(BaseModel):
    """ACME identifier (RFC 8555 Section 7.1.3)."""

    type: str
    value: str

    @classmethod
    def dns(cls, host: str) -> "Identifier":
        return cls(type="dns", value=host)


class Subproblem(BaseModel):
    """Per-identifier problem inside a compound problem (RFC 8555 Section 6.7.1)."""

    type: str
    detail: str | None = None
    identifier: Identifier | None = None


class Problem(BaseModel):
    """Problem document (RFC 7807) returned on ACME errors."""

    type: str = "about:blank"
    detail: str | None = None
    status: int | None = None
    subproblems: list[Subproblem] | None = None


class NewAccountRequest(BaseModel):
    """Payload for newAccount (RFC 8555 Section 7.3)."""

    contact: list[str]
    terms_of_service_agreed: bool = Field(alias="termsOfServiceAgreed")
    only_return_existing: bool | None = Field(default=None, alias="onlyReturnExisting")

    model_config = ConfigDict(populate_by_name=True)


class AccountResource(BaseModel):
    """ACME account resource (RFC 8555 Section 7.1.2)."""

    status: AccountStatus
    contact: list[str] | None = None
    orders: str | None = None


class NewOrderRequest(BaseModel):
    """Payload for newOrder (RFC 8555 Section 7.4)."""

    identifiers: list[Identifier]
    not_before: datetime | None = Field(default=None, alias="notBefore")
    not_after: datetime | None = Field(default=None, alias="notAfter")

    model_config = ConfigDict(populate_by_name=True)


class Challenge(BaseModel):
    """ACME challenge resource (RFC 8555 Section 7.5.1)."""

    type: str
    url: str
    status: ChallengeStatus
    token: str | None = None
    validated: datetime | None = None
    error: Problem | None = None


class Authorization(BaseModel):
    """ACME authorization resource (RFC 8555 Section 7.1.4)."""

    status: AuthorizationStatus
    identifier: Identifier
    challenges: list[Challenge]
    expires: datetime | None = None
    wildcard: bool | None = None


class Order(BaseModel):
    """ACME order resource (RFC 8555 Section 7.1.3)."""

    status: OrderStatus
    identifiers: list[Identifier]
    authorizations: list[str]
    finalize: str
    expires: datetime | None = None
    not_before: datetime | None = Field(default=None, alias="notBefore")
    not_after: datetime | None = Field(default=None, alias="notAfter")
    certificate: str | None = None
    error: Problem | None = None

    model_config = ConfigDict(populate_by_name=True)


class FinalizeRequest(BaseModel):
    """Payload for an order's finalize URL; csr is base64url DER."""

    csr: str


# =============================================================================
# Controller data
# =============================================================================


@dataclass(frozen=True)
class Account:
    """An ACME account owned by this process for one issuer."""

    issuer_id: str
    url: str
    key: rsa.RSAPrivateKey


@dataclass(frozen=True)
class CertificateBundle:
    """Issued certificate chain plus the private key it was requested for."""

    certificate_chain_pem: str
    private_key_pem: str
    hosts: list[str]
