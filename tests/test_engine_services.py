"""Tests for concurrency groups, the event bus and secret providers."""

from __future__ import annotations

from uuid import uuid4

import pytest

from litestar_ci.core.events import JobQueued, RunCompleted, RunQueued, RunStarted
from litestar_ci.core.types import RunStatus
from litestar_ci.engine.bus import EventBus
from litestar_ci.engine.concurrency import ConcurrencyGroupManager
from litestar_ci.engine.secrets import EnvironmentSecretProvider, StaticSecretProvider, resolve_secrets


@pytest.mark.unit
class TestConcurrencyGroups:
    """Tests for the concurrency group manager."""

    def test_runs_wait_in_order(self) -> None:
        manager = ConcurrencyGroupManager()
        first, second, third = uuid4(), uuid4(), uuid4()

        assert manager.admit(first, "ci-main").admitted
        assert not manager.admit(second, "ci-main").admitted
        assert not manager.admit(third, "ci-main").admitted
        assert list(manager.get("ci-main").waiting) == [second, third]

        assert manager.release(first) == second
        assert manager.release(second) == third
        assert manager.release(third) is None
        assert len(manager) == 0

    def test_groups_are_independent(self) -> None:
        manager = ConcurrencyGroupManager()

        assert manager.admit(uuid4(), "ci-main").admitted
        assert manager.admit(uuid4(), "ci-dev").admitted
        assert len(manager) == 2

    def test_cancel_in_progress_supersedes_active_and_waiting(self) -> None:
        manager = ConcurrencyGroupManager()
        active, waiting, newest = uuid4(), uuid4(), uuid4()
        manager.admit(active, "deploy")
        manager.admit(waiting, "deploy")

        admission = manager.admit(newest, "deploy", cancel_in_progress=True)

        assert admission.admitted
        assert admission.superseded == (active, waiting)
        group = manager.get("deploy")
        assert group.active == newest
        assert not group.waiting

    def test_release_superseded_run_keeps_new_active(self) -> None:
        manager = ConcurrencyGroupManager()
        old, new = uuid4(), uuid4()
        manager.admit(old, "deploy")
        manager.admit(new, "deploy", cancel_in_progress=True)

        assert manager.release(old) is None
        assert manager.get("deploy").active == new
        assert manager.key_of(old) is None
        assert manager.key_of(new) == "deploy"

    def test_release_waiting_run(self) -> None:
        manager = ConcurrencyGroupManager()
        active, waiting = uuid4(), uuid4()
        manager.admit(active, "g")
        manager.admit(waiting, "g")

        assert manager.release(waiting) is None
        assert manager.release(active) is None
        assert manager.groups() == []

    def test_release_unknown(self) -> None:
        assert ConcurrencyGroupManager().release(uuid4()) is None


@pytest.mark.unit
@pytest.mark.asyncio
class TestEventBus:
    """Tests for the reporting event bus."""

    async def test_sync_and_async_observers(self) -> None:
        bus = EventBus()
        seen: list[str] = []

        def sync_observer(event) -> None:
            seen.append(f"sync:{event.event_type}")

        async def async_observer(event) -> None:
            seen.append(f"async:{event.event_type}")

        bus.subscribe(sync_observer)
        bus.subscribe(async_observer)
        await bus.emit(RunStarted(run_id=uuid4(), workflow="ci", number=1))

        assert seen == ["sync:run.started", "async:run.started"]

    async def test_filter_by_type(self) -> None:
        bus = EventBus()
        seen = []
        bus.subscribe(seen.append, [RunQueued, RunCompleted])

        await bus.emit(RunQueued(run_id=uuid4(), workflow="ci", number=1, event_kind="push"))
        await bus.emit(JobQueued(run_id=uuid4(), execution_id=uuid4(), node_id="a", labels=frozenset()))
        await bus.emit(RunCompleted(run_id=uuid4(), workflow="ci", number=1, status=RunStatus.SUCCEEDED))

        assert [event.event_type for event in seen] == ["run.queued", "run.completed"]

    async def test_failing_observer_does_not_stop_others(self, caplog: pytest.LogCaptureFixture) -> None:
        bus = EventBus()
        seen = []

        def broken(event) -> None:
            msg = "observer bug"
            raise RuntimeError(msg)

        bus.subscribe(broken)
        bus.subscribe(seen.append)
        await bus.emit(RunStarted(run_id=uuid4(), workflow="ci", number=1))

        assert len(seen) == 1
        assert "failed on run.started" in caplog.text

    async def test_unsubscribe(self) -> None:
        bus = EventBus()
        seen = []
        unsubscribe = bus.subscribe(seen.append)

        unsubscribe()
        unsubscribe()
        await bus.emit(RunStarted(run_id=uuid4(), workflow="ci", number=1))

        assert seen == []
        assert len(bus) == 0


@pytest.mark.unit
@pytest.mark.asyncio
class TestSecrets:
    """Tests for secret providers."""

    async def test_static_provider(self) -> None:
        provider = StaticSecretProvider({"TOKEN": "s3cr3t"})

        assert await provider.get_secret("TOKEN") == "s3cr3t"
        assert await provider.get_secret("OTHER") is None

    async def test_environment_provider(self) -> None:
        provider = EnvironmentSecretProvider(environ={"CI_SECRET_TOKEN": "from-env", "TOKEN": "plain"})

        assert await provider.get_secret("TOKEN") == "from-env"
        assert await EnvironmentSecretProvider(prefix="", environ={"TOKEN": "plain"}).get_secret("TOKEN") == "plain"

    async def test_resolve_undefined_is_empty(self) -> None:
        provider = StaticSecretProvider({"A": "1"})

        assert await resolve_secrets(provider, ["A", "B", "A"]) == {"A": "1", "B": ""}
        assert await resolve_secrets(None, ["A"]) == {"A": ""}
