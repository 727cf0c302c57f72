from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, Iterator, List, Optional

from .target import Target


@dataclass(slots=True)
class RegistryDelta:
    appeared: List[str] = field(default_factory=list)
    disappeared: List[str] = field(default_factory=list)
    persisted: List[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.appeared or self.disappeared)


class TargetRegistry:
    """Holds whatever target set was pushed last; no interpolation."""

    def __init__(self, sort_by_id: bool = False) -> None:
        self._sort_by_id = sort_by_id
        self._targets: Dict[str, Target] = {}
        self._version = 0

    @property
    def version(self) -> int:
        return self._version

    def __len__(self) -> int:
        return len(self._targets)

    def __iter__(self) -> Iterator[Target]:
        return iter(self._targets.values())

    def update(self, new_targets: Iterable[Target]) -> RegistryDelta:
        incoming: Dict[str, Target] = {}
        for target in new_targets:
            # First occurrence of a duplicate id wins.
            if target.id not in incoming:
                incoming[target.id] = target
        if self._sort_by_id:
            incoming = {key: incoming[key] for key in sorted(incoming)}

        delta = RegistryDelta()
        for target_id in incoming:
            if target_id in self._targets:
                delta.persisted.append(target_id)
            else:
                delta.appeared.append(target_id)
        for target_id in self._targets:
            if target_id not in incoming:
                delta.disappeared.append(target_id)

        self._targets = incoming
        self._version += 1
        return delta

    def clear(self) -> RegistryDelta:
        return self.update(())

    def current_targets(self) -> List[Target]:
        return list(self._targets.values())

    def contains(self, target_id: str) -> bool:
        return target_id in self._targets

    def get(self, target_id: str) -> Optional[Target]:
        return self._targets.get(target_id)
