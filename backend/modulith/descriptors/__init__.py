"""
Module Descriptor Store.

Declared identity of every business module: exported contracts, events and
DTOs, and the modules each one may depend on.
"""

from .errors import UnresolvedModuleError
from .models import DEFAULT_ENTITY_LOCATIONS, DEFAULT_QUERY_UNITS, ModuleDescriptor
from .store import DescriptorStore

__all__ = [
    "DEFAULT_ENTITY_LOCATIONS",
    "DEFAULT_QUERY_UNITS",
    "DescriptorStore",
    "ModuleDescriptor",
    "UnresolvedModuleError",
]
