"""
Attribute mapping hook.

Before a user is created or updated in the target, the configured
``AttributeMapper`` may rewrite the target representation from the source
user. The default mapper leaves it untouched. A custom mapper is any
``AttributeMapper`` subclass, named in ``sync.attribute_mapper`` as either
``package.module`` (the first subclass found is used) or
``package.module:ClassName``.
"""

import logging
import importlib
from typing import Optional

from ldap_scim_sync.models import SourceUser, TargetUser

logger = logging.getLogger(__name__)


class MapperLoadError(Exception):
    """Raised when the configured attribute mapper cannot be loaded."""
    pass


class AttributeMapper:
    """Identity mapper; subclasses override ``map_attributes``."""

    def __init__(self, config: Optional[dict] = None):
        self.config = config or {}

    def map_attributes(self, target: TargetUser, source: SourceUser) -> TargetUser:
        return target


def load_mapper(path: Optional[str], config: Optional[dict] = None) -> AttributeMapper:
    """
    Instantiate the attribute mapper named by ``path``.

    Args:
        path: ``module`` or ``module:ClassName``; empty for the default mapper
        config: Passed to the mapper constructor

    Returns:
        AttributeMapper instance

    Raises:
        MapperLoadError: If the module cannot be imported or has no mapper
    """
    if not path:
        return AttributeMapper(config)

    module_name, _, class_name = path.partition(':')

    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise MapperLoadError(f"Failed to import attribute mapper module {module_name}: {e}")

    mapper_class = None
    if class_name:
        mapper_class = getattr(module, class_name, None)
        if not (isinstance(mapper_class, type) and issubclass(mapper_class, AttributeMapper)):
            raise MapperLoadError(f"{class_name} in {module_name} is not an AttributeMapper")
    else:
        for attr_name in dir(module):
            attr = getattr(module, attr_name)
            if (isinstance(attr, type) and
                    issubclass(attr, AttributeMapper) and
                    attr is not AttributeMapper):
                mapper_class = attr
                break

        if not mapper_class:
            raise MapperLoadError(f"No AttributeMapper subclass found in module {module_name}")

    logger.info(f"Using attribute mapper {mapper_class.__module__}.{mapper_class.__name__}")
    return mapper_class(config)
