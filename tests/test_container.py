"""Tests for the service container (engine/container.py)."""

from __future__ import annotations

from entsync.engine.container import Container
from entsync.stores.sync_store import SyncStore

from sample_sync import AcmeProvider, Task, User, UserProvider


class Clock:
    def __init__(self, start: int = 0):
        self.start = start


class SpecialTask(Task):
    pass


class TestContainer:
    def test_unbound_classes_are_built(self):
        app = Container()
        assert isinstance(app.get(Clock), Clock)
        assert app.get(Clock) is not app.get(Clock)
        assert app.get(Clock, 5).start == 5

    def test_bind_and_singleton(self):
        app = Container().bind(Clock, lambda c, *args: Clock(42))
        assert app.get(Clock).start == 42
        app.singleton(Clock)
        assert app.get(Clock) is app.get(Clock)

    def test_instance(self):
        clock = Clock()
        assert Container().instance(Clock, clock).get(Clock) is clock

    def test_get_class_follows_class_bindings(self):
        app = Container().bind(Task, SpecialTask)
        assert app.get_class(Task) is SpecialTask
        assert app.get_class(User) is User
        assert isinstance(app.get(Task), SpecialTask)

    def test_child_falls_back_to_parent(self):
        clock = Clock()
        parent = Container().instance(Clock, clock)
        child = Container(parent=parent, bindings={Task: SpecialTask})
        assert child.has(Clock)
        assert child.get(Clock) is clock
        assert child.get_class(Task) is SpecialTask
        assert parent.get_class(Task) is Task

    def test_in_context_of_without_bindings(self):
        app = Container()
        assert app.in_context_of(AcmeProvider) is app
        assert app.in_context_of(Clock) is app

    def test_provider_is_a_root_singleton(self, store: SyncStore):
        app = Container().instance(SyncStore, store).provider(AcmeProvider)
        child = Container(parent=app, bindings={Task: SpecialTask})
        provider = child.get(UserProvider)
        assert isinstance(provider, AcmeProvider)
        assert app.get(AcmeProvider) is provider
        assert provider.container is app
        assert provider.store is store
