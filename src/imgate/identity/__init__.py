"""Identity: uid handling and the credential signing client."""

from imgate.identity.dev import DevCredentialProvider
from imgate.identity.ids import ParsedLogin, normalize_uid, parse_uid_token, to_backend_uid
from imgate.identity.signer import (
    DEFAULT_RETRY,
    CredentialProvider,
    SessionCredentials,
    SigningClient,
    parse_credentials,
)

__all__ = [
    "DEFAULT_RETRY",
    "CredentialProvider",
    "DevCredentialProvider",
    "ParsedLogin",
    "SessionCredentials",
    "SigningClient",
    "normalize_uid",
    "parse_credentials",
    "parse_uid_token",
    "to_backend_uid",
]
