"""Background workers supporting async processing."""

from .token_issuance import TokenIssuanceLoop

__all__ = ["TokenIssuanceLoop"]
