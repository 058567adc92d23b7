"""Dependency injection for FastAPI endpoints"""

from fastapi import Request
from cardsync.infrastructure.clients.aggregator import AggregatorClient
from cardsync.infrastructure.security.encryption import CredentialCipher


def get_request_id(request: Request) -> str:
    """Extract request ID from request state"""
    return getattr(request.state, "request_id", "unknown")


def get_aggregator_client() -> AggregatorClient:
    """Provide aggregator API client instance"""
    return AggregatorClient()


def get_cipher() -> CredentialCipher:
    """Provide the access-token cipher"""
    return CredentialCipher()
