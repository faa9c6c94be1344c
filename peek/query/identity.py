"""Composite (id, instance_id) identity helpers.

An entity id is only unique inside the instance that issued it, so every
lookup, join and cache key in the engine carries both halves. Clients send
composite references as "id:instanceId"; a bare "id" matches that id on any
allowed instance.
"""

from dataclasses import dataclass

from peek.core.errors import ClientInputError


@dataclass(frozen=True)
class CompositeKey:
    """Identity of one catalog entity. instance_id None means "any instance"."""

    id: str
    instance_id: str | None = None

    @property
    def is_bare(self) -> bool:
        return not self.instance_id

    def __str__(self) -> str:
        return composite_string(self.id, self.instance_id)


def parse_composite_value(value) -> CompositeKey:
    """Parse "82:inst-a" or a bare "82". Splits on the first colon only."""
    if value is None or isinstance(value, bool) or isinstance(value, (dict, list, tuple)):
        raise ClientInputError(f"Malformed entity id: {value!r}")

    text = str(value).strip()
    entity_id, sep, instance_id = text.partition(":")
    entity_id = entity_id.strip()
    if not entity_id:
        raise ClientInputError(f"Malformed entity id: {value!r}")

    instance_id = instance_id.strip() if sep else ""
    return CompositeKey(entity_id, instance_id or None)


def composite_string(entity_id: str, instance_id: str | None) -> str:
    """Build the "id:instanceId" form (bare id for legacy/unknown instance)."""
    if instance_id:
        return f"{entity_id}:{instance_id}"
    return str(entity_id)


def parse_composite_values(values) -> tuple[CompositeKey, ...]:
    """Parse a list of references, dropping exact duplicates but keeping order."""
    seen = set()
    keys = []
    for value in values:
        key = parse_composite_value(value)
        if key not in seen:
            seen.add(key)
            keys.append(key)
    return tuple(keys)
