"""Agent provider implementations."""

from testgen_agents.backend.base import AgentProvider, ProviderError, UnknownProviderError
from testgen_agents.backend.devin_api import DevinApiError
from testgen_agents.backend.registry import (
    SUPPORTED_PROVIDERS,
    configured_provider_id,
    create_provider,
    resolve_provider_id,
)

__all__ = [
    "SUPPORTED_PROVIDERS",
    "AgentProvider",
    "DevinApiError",
    "ProviderError",
    "UnknownProviderError",
    "configured_provider_id",
    "create_provider",
    "resolve_provider_id",
]
