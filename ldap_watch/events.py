"""
Change events delivered by the directory notification feed.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Any, Mapping, Optional, Tuple, FrozenSet

logger = logging.getLogger(__name__)

OBJECT_CLASS_ATTRIBUTE = 'objectClass'


class MalformedEvent(Exception):
    """Raised when an event lacks a usable account identifier or type tag."""
    pass


def _as_strings(value: Any) -> Tuple[str, ...]:
    """Normalize an ldap3 attribute value (scalar, list, or bytes) to a tuple of str."""
    if value is None:
        return ()
    if not isinstance(value, (list, tuple)):
        value = [value]
    result = []
    for item in value:
        if isinstance(item, bytes):
            item = item.decode('utf-8', errors='replace')
        result.append(str(item))
    return tuple(result)


@dataclass(frozen=True)
class ChangeEvent:
    """One changed directory object, as observed at notification time."""

    distinguished_name: str
    object_classes: FrozenSet[str] = frozenset()
    attributes: Mapping[str, Tuple[str, ...]] = field(default_factory=dict)

    @classmethod
    def from_ldap_response(cls, response: Dict[str, Any]) -> 'ChangeEvent':
        """
        Build an event from an ldap3 ``searchResEntry`` response dict.

        Attribute values are taken from the decoded ``attributes`` when
        present, falling back to ``raw_attributes``.
        """
        raw = response.get('attributes') or response.get('raw_attributes') or {}
        attributes = {name: _as_strings(value) for name, value in raw.items()}
        object_classes = frozenset(
            value.lower()
            for name, values in attributes.items() if name.lower() == OBJECT_CLASS_ATTRIBUTE.lower()
            for value in values
        )
        return cls(
            distinguished_name=str(response.get('dn', '')),
            object_classes=object_classes,
            attributes=attributes
        )

    def has_attribute(self, name: str) -> bool:
        return self._lookup_key(name) is not None

    def get_values(self, name: str) -> Tuple[str, ...]:
        """Return the values of an attribute, matching its name case-insensitively."""
        key = self._lookup_key(name)
        if key is None:
            return ()
        return tuple(self.attributes[key])

    def _lookup_key(self, name: str) -> Optional[str]:
        if name in self.attributes:
            return name
        lowered = name.lower()
        for key in self.attributes:
            if key.lower() == lowered:
                return key
        return None

    def is_object_of_class(self, object_class: str) -> bool:
        """
        True if the event carries the given class tag.

        Raises:
            MalformedEvent: If the event carries no object class attribute at all
        """
        if not self.object_classes and not self.has_attribute(OBJECT_CLASS_ATTRIBUTE):
            raise MalformedEvent(f"Event for {self.distinguished_name} has no {OBJECT_CLASS_ATTRIBUTE}")
        return object_class.lower() in self.object_classes

    def account_id(self, attribute: str = 'sAMAccountName') -> str:
        """
        Return the account identifier carried by the event.

        Raises:
            MalformedEvent: If the attribute is missing or blank
        """
        for value in self.get_values(attribute):
            if value.strip():
                return value.strip()
        raise MalformedEvent(f"Event for {self.distinguished_name} has no usable {attribute}")
