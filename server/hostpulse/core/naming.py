"""Counter instance name normalization.

Performance counter tables label interfaces and volumes with the instance
name Windows derives from the device name, with path separators and a few
reserved characters replaced. Inventory entities carry the raw device name,
so metrics rows are matched against ``normalize(entity.name)``.
"""

from typing import Dict, Iterable, Optional, Tuple, TypeVar

_SUBSTITUTIONS: Tuple[Tuple[str, str], ...] = (
    ("\\", "_"),
    ("/", "_"),
    ("(", "["),
    (")", "]"),
    ("#", "_"),
)

T = TypeVar("T")


class CounterNameNormalizer:
    """Memoizing translator from device names to counter instance names.

    The cache only ever grows; concurrent first inserts for the same key
    compute identical values, so ``setdefault`` keeps whichever lands first.
    """

    def __init__(self) -> None:
        self._cache: Dict[str, str] = {}

    def normalize(self, raw_name: str) -> str:
        cached = self._cache.get(raw_name)
        if cached is not None:
            return cached

        normalized = raw_name
        for original, replacement in _SUBSTITUTIONS:
            normalized = normalized.replace(original, replacement)
        return self._cache.setdefault(raw_name, normalized)

    def __len__(self) -> int:
        return len(self._cache)


counter_names = CounterNameNormalizer()


def normalize_counter_name(raw_name: str) -> str:
    """Return the counter instance name for ``raw_name``."""
    return counter_names.normalize(raw_name)


def match_counter_instance(
    instance_name: Optional[str],
    entities: Iterable[T],
    *,
    name_of=lambda entity: getattr(entity, "name", None),
) -> Optional[T]:
    """Return the first entity whose normalized name equals ``instance_name``.

    Two entities normalizing to the same name are ambiguous; the first one in
    collection order wins.
    """
    if not instance_name:
        return None

    for entity in entities:
        entity_name = name_of(entity)
        if entity_name and normalize_counter_name(entity_name) == instance_name:
            return entity
    return None
