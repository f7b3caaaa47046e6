"""Composable transform chains for moving records between backends and entities."""

from __future__ import annotations

from typing import Any, Callable, Iterable, Iterator

Stage = Callable[..., Any]

_DROP = object()


class Pipeline:
    """An immutable chain of transform steps with an optional filter.

    Each stage is called as ``stage(value, *args)`` and returns the value for
    the next stage. ``unless(predicate)`` drops values for which the
    predicate is true; ``send`` then returns ``None`` and ``stream`` skips them.

        to_entity = Pipeline().through(unwrap).then(make_entity)
        entity = to_entity.send(payload, ctx)
    """

    def __init__(
        self,
        stages: tuple[Stage, ...] = (),
        final: Stage | None = None,
        filters: tuple[Callable[..., bool], ...] = (),
    ):
        self._stages = stages
        self._final = final
        self._filters = filters

    def through(self, stage: Stage) -> Pipeline:
        return Pipeline((*self._stages, stage), self._final, self._filters)

    def then(self, stage: Stage) -> Pipeline:
        if self._final is None:
            return Pipeline(self._stages, stage, self._filters)
        previous = self._final
        return Pipeline(self._stages, lambda value, *args: stage(previous(value, *args), *args), self._filters)

    def unless(self, predicate: Callable[..., bool]) -> Pipeline:
        return Pipeline(self._stages, self._final, (*self._filters, predicate))

    def _run(self, value: Any, *args: Any) -> Any:
        for stage in self._stages:
            value = stage(value, *args)
        for predicate in self._filters:
            if predicate(value, *args):
                return _DROP
        if self._final is not None:
            value = self._final(value, *args)
        return value

    def send(self, value: Any, *args: Any) -> Any:
        result = self._run(value, *args)
        return None if result is _DROP else result

    def stream(self, values: Iterable[Any], *args: Any) -> Iterator[Any]:
        for value in values:
            result = self._run(value, *args)
            if result is not _DROP:
                yield result

    def __bool__(self) -> bool:
        return bool(self._stages or self._final or self._filters)
