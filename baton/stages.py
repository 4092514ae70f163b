"""
StageRegistry - the ordered stage table for one entry-point call.

A registry is built fresh on every call from the caller's declarations
and is never persisted. The first declared stage is where a fresh job
goes when its start handler does not select one explicitly, so the
declaration order must be the same on every call for a given entry point.
"""

from typing import Any, Callable, Iterable, Iterator, Mapping, Optional, Union

from baton.errors import ConfigError, StaleStageError

Handler = Callable[..., Any]
StageDeclarations = Union[Mapping[str, Handler], Iterable[tuple[str, Handler]]]


class StageRegistry:
    """
    Ordered (name, handler) pairs plus optional start and end handlers.

    Stages can be passed in at construction or declared with the
    stage() decorator:

        registry = StageRegistry()

        @registry.stage("scan")
        def scan(ctx):
            ...
    """

    def __init__(
        self,
        stages: Optional[StageDeclarations] = None,
        start: Optional[Handler] = None,
        end: Optional[Handler] = None,
    ):
        self._stages: dict[str, Handler] = {}
        self.start = self._check_handler("start", start) if start is not None else None
        self.end = self._check_handler("end", end) if end is not None else None

        if stages is not None:
            items = stages.items() if isinstance(stages, Mapping) else stages
            for name, handler in items:
                self.add(name, handler)

    @staticmethod
    def _check_handler(name: str, handler: Any) -> Handler:
        if not callable(handler):
            raise ConfigError(f"Handler for '{name}' is not callable: {handler!r}")
        return handler

    def add(self, name: str, handler: Handler) -> None:
        """Register a stage after the ones already declared."""
        if not isinstance(name, str) or not name:
            raise ConfigError(f"Stage name must be a non-empty string, got {name!r}")
        if name in self._stages:
            raise ConfigError(f"Stage '{name}' is declared twice")
        self._stages[name] = self._check_handler(name, handler)

    def stage(self, name: str) -> Callable[[Handler], Handler]:
        """Decorator form of add()."""
        def decorator(handler: Handler) -> Handler:
            self.add(name, handler)
            return handler
        return decorator

    def on_start(self, handler: Handler) -> Handler:
        """Decorator registering the start handler."""
        self.start = self._check_handler("start", handler)
        return handler

    def on_end(self, handler: Handler) -> Handler:
        """Decorator registering the end handler."""
        self.end = self._check_handler("end", handler)
        return handler

    def validate(self) -> None:
        """Raise ConfigError unless at least one stage is declared."""
        if not self._stages:
            raise ConfigError("At least one stage must be declared")

    @property
    def first(self) -> str:
        """Name of the first declared stage."""
        self.validate()
        return next(iter(self._stages))

    @property
    def names(self) -> tuple[str, ...]:
        return tuple(self._stages)

    def resolve(self, name: str) -> Handler:
        """
        Look up a stage handler.

        Raises:
            StaleStageError: If name is not declared in this registry
        """
        try:
            return self._stages[name]
        except KeyError:
            raise StaleStageError(name, self.names) from None

    def __contains__(self, name: object) -> bool:
        return name in self._stages

    def __iter__(self) -> Iterator[tuple[str, Handler]]:
        return iter(self._stages.items())

    def __len__(self) -> int:
        return len(self._stages)

    def __repr__(self) -> str:
        return (
            f"StageRegistry(stages={list(self._stages)}, "
            f"start={self.start is not None}, end={self.end is not None})"
        )
