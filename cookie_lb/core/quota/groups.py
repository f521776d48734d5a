from __future__ import annotations

from collections.abc import Iterable, Sequence


class SharedQuotaGroups:
    """Maps a model to the set of models drawing from the same per-user shared balance."""

    def __init__(self, groups: Iterable[Sequence[str]]) -> None:
        self._by_model: dict[str, tuple[str, ...]] = {}
        for group in groups:
            members = tuple(dict.fromkeys(member for member in group if member))
            for member in members:
                # First declaration wins when a model is listed in more than one group.
                self._by_model.setdefault(member, members)

    def group_of(self, model_name: str) -> list[str]:
        members = self._by_model.get(model_name)
        if members is None:
            return [model_name]
        return list(members)
