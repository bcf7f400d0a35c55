from .registry import (
    EntitySchema,
    TenantHandle,
    TenantRegistry,
    get_registry,
    normalize_company_code,
    registry_from_config,
)

__all__ = [
    "EntitySchema",
    "TenantHandle",
    "TenantRegistry",
    "get_registry",
    "normalize_company_code",
    "registry_from_config",
]
