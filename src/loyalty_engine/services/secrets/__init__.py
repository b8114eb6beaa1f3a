from .pos_tokens import (
    PosCredentialResolver,
    PosCredentials,
    StaticPosCredentialSource,
    build_default_credential_resolver,
)

__all__ = [
    "PosCredentialResolver",
    "PosCredentials",
    "StaticPosCredentialSource",
    "build_default_credential_resolver",
]
