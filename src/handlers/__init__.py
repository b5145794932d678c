"""Action handlers - per-action-type validate/execute/rollback."""

from .base import ActionHandler, HandlerRegistry, HandlerResult, ValidationResult
from .affiliate_link import AddAffiliateLinkHandler
from .meta_description import UpdateMetaDescriptionHandler
from .collection import AddToCollectionHandler


def create_default_registry(store) -> HandlerRegistry:
    """Registry with every built-in handler."""
    registry = HandlerRegistry()
    registry.register(AddAffiliateLinkHandler(store))
    registry.register(UpdateMetaDescriptionHandler(store))
    registry.register(AddToCollectionHandler(store))
    return registry


__all__ = [
    "ActionHandler",
    "HandlerRegistry",
    "HandlerResult",
    "ValidationResult",
    "AddAffiliateLinkHandler",
    "UpdateMetaDescriptionHandler",
    "AddToCollectionHandler",
    "create_default_registry",
]
