from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest
from pytest_mock import MockerFixture

from layered_context.cache import CacheKey
from layered_context.cancellation import CancellationToken
from layered_context.config import LoadMode, ScopeType
from layered_context.discovery import FilesystemDiscoveryEngine
from layered_context.engine import ContextEngine
from layered_context.events import ChangeChannel, ChangeNotification, ContextEvent
from layered_context.exceptions import StoreError, UnreadableDirectoryError
from layered_context.settings import BudgetSettings, ContextSettings, DiscoverySettings, LoaderSettings
from layered_context.store import JsonlContextStore


def write(path: Path, content: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    return path


def make_settings(tmp_path: Path, **overrides: Any) -> ContextSettings:
    data: dict[str, Any] = {
        "loader": LoaderSettings(global_directory=tmp_path / "global", max_depth=2),
    }
    data.update(overrides)
    return ContextSettings(**data)


@pytest.fixture
def repo(tmp_path: Path) -> Path:
    root = tmp_path.resolve() / "repo"
    write(root / "package.json", "{}")
    write(root / "VIBEX.md", "Repository rules")
    write(root / "src" / "VIBEX.md", "Source rules")
    write(root / "src" / "docs" / "guide.md", "How to work in src")
    write(root / "src" / "app.py", "print('hello')\n")
    return root


class FullModeFailingDiscovery(FilesystemDiscoveryEngine):
    def discover(self, start_directory, config: DiscoverySettings, cancel=None):  # noqa: ANN001, ANN201
        if config.extensions:
            msg = "full walk exploded"
            raise RuntimeError(msg)
        return super().discover(start_directory, config, cancel)


class AlwaysFailingDiscovery:
    def discover(self, start_directory, config, cancel=None):  # noqa: ANN001, ANN201
        msg = "disk on fire"
        raise OSError(msg)


@pytest.mark.integration
def test_repo_scenario_order(tmp_path: Path, repo: Path) -> None:
    with ContextEngine(make_settings(tmp_path)) as engine:
        result = engine.load_context(repo / "src")

    ordered = [(e.scope_type, e.priority_score, e.source_path) for e in result.entry_snapshot]
    assert ordered[:3] == [
        (ScopeType.PROJECT, 500, repo / "VIBEX.md"),
        (ScopeType.DIRECTORY, 100, repo / "src" / "VIBEX.md"),
        (ScopeType.DIRECTORY, 90, repo / "VIBEX.md"),
    ]
    # src/VIBEX.md is already loaded by the directory tier.
    assert [e.source_path for e in result.entry_snapshot[3:]] == [repo / "src" / "docs" / "guide.md"]
    assert result.entry_snapshot[3].priority_score == 45
    assert result.errors == ()
    assert result.composed_document.startswith(f"# Context [project] {(repo / 'VIBEX.md').as_posix()}\n")


@pytest.mark.integration
def test_second_load_within_ttl_is_a_cache_hit(tmp_path: Path, repo: Path, mocker: MockerFixture) -> None:
    discovery = FilesystemDiscoveryEngine()
    spy = mocker.spy(discovery, "discover")

    with ContextEngine(make_settings(tmp_path), discovery_engine=discovery) as engine:
        first = engine.load_context(repo / "src")
        second = engine.load_context(repo / "src")

    assert spy.call_count == 1
    assert second.composed_document == first.composed_document
    assert second is first


@pytest.mark.integration
def test_change_notification_forces_a_miss(tmp_path: Path, repo: Path, mocker: MockerFixture) -> None:
    discovery = FilesystemDiscoveryEngine()
    spy = mocker.spy(discovery, "discover")
    updates: list[dict[str, Any]] = []

    with ContextEngine(make_settings(tmp_path), discovery_engine=discovery) as engine:
        engine.events.subscribe(ContextEvent.CONTEXT_UPDATED, updates.append)
        channel = ChangeChannel()
        engine.attach(channel)

        engine.load_context(repo / "src")
        write(repo / "VIBEX.md", "Repository rules, revised")
        channel.publish(ChangeNotification(affected_paths=(repo / "VIBEX.md",)))
        channel.join()
        refreshed = engine.load_context(repo / "src")

    assert spy.call_count == 2
    assert "Repository rules, revised" in refreshed.composed_document
    assert updates[0]["evicted"] == [CacheKey(start_directory=repo / "src", mode=LoadMode.STANDARD)]


@pytest.mark.integration
def test_unrelated_change_keeps_the_cached_result(tmp_path: Path, repo: Path, mocker: MockerFixture) -> None:
    discovery = FilesystemDiscoveryEngine()
    spy = mocker.spy(discovery, "discover")

    with ContextEngine(make_settings(tmp_path), discovery_engine=discovery) as engine:
        engine.load_context(repo / "src")
        evicted = engine.handle_change(ChangeNotification(affected_paths=(tmp_path / "elsewhere.md",)))
        engine.load_context(repo / "src")

    assert evicted == []
    assert spy.call_count == 1


@pytest.mark.integration
def test_force_refresh_bypasses_the_cache(tmp_path: Path, repo: Path, mocker: MockerFixture) -> None:
    discovery = FilesystemDiscoveryEngine()
    spy = mocker.spy(discovery, "discover")

    with ContextEngine(make_settings(tmp_path), discovery_engine=discovery) as engine:
        engine.load_context(repo / "src")
        refreshed = engine.force_refresh(repo / "src")

    assert spy.call_count == 2
    assert engine.get_last_result() is refreshed


@pytest.mark.integration
def test_env_home_round_trip(
    tmp_path: Path,
    repo: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    write(repo / "src" / "VIBEX.md", "Home is ${env.HOME}")
    resolved: list[dict[str, Any]] = []

    monkeypatch.setenv("HOME", "/home/alice")
    with ContextEngine(make_settings(tmp_path)) as engine:
        engine.events.subscribe(ContextEvent.VARIABLE_RESOLVED, resolved.append)
        with_home = engine.load_context(repo / "src")

    monkeypatch.delenv("HOME")
    with ContextEngine(make_settings(tmp_path)) as engine:
        without_home = engine.load_context(repo / "src")

    assert "Home is /home/alice" in with_home.composed_document
    assert "Home is ${env.HOME}" in without_home.composed_document
    assert {"name": "env.HOME", "value": "/home/alice", "source_path": repo / "src" / "VIBEX.md"} in resolved


@pytest.mark.integration
def test_custom_variable_resolvers_override_builtins(tmp_path: Path, repo: Path) -> None:
    write(repo / "VIBEX.md", "Author ${user} on ${project}")

    with ContextEngine(
        make_settings(tmp_path),
        variable_resolvers={"user": lambda: "alice", "project": lambda: "demo"},
    ) as engine:
        result = engine.load_context(repo)

    assert "Author alice on demo" in result.composed_document
    assert result.variables["project"] == "demo"
    # the raw text is kept on the entry
    assert result.entry_snapshot[0].raw_content == "Author ${user} on ${project}"


@pytest.mark.integration
def test_budget_truncates_the_tail(tmp_path: Path, repo: Path) -> None:
    settings = make_settings(tmp_path, budget=BudgetSettings(max_bytes=1_000, max_entries=2))

    with ContextEngine(settings) as engine:
        result = engine.load_context(repo / "src")

    assert [e.priority_score for e in result.entry_snapshot] == [500, 100]
    assert result.stats.file_count == 2
    assert result.stats.truncated_count == 2
    assert result.stats.total_bytes == len(b"Repository rules") + len(b"Source rules")


@pytest.mark.integration
def test_full_context_scores_project_files(tmp_path: Path, repo: Path) -> None:
    with ContextEngine(make_settings(tmp_path)) as engine:
        result = engine.load_full_context(repo)

    scopes = {e.source_path: e.scope_type for e in result.entry_snapshot}
    assert scopes[repo / "src" / "app.py"] is ScopeType.FULL_PROJECT_FILE
    assert scopes[repo / "src" / "VIBEX.md"] is ScopeType.FULL_PROJECT_FILE
    assert scopes[repo / "VIBEX.md"] is not ScopeType.FULL_PROJECT_FILE
    assert result.key.mode is LoadMode.FULL
    assert engine.get_cache_statistics().entry_count == 1


@pytest.mark.integration
def test_full_context_falls_back_when_discovery_fails(tmp_path: Path, repo: Path) -> None:
    with ContextEngine(make_settings(tmp_path), discovery_engine=FullModeFailingDiscovery()) as engine:
        result = engine.load_full_context(repo)

    assert any("falling back" in e for e in result.errors)
    subdirectory = [e for e in result.entry_snapshot if e.scope_type is ScopeType.SUBDIRECTORY]
    assert [e.source_path.name for e in subdirectory] == ["VIBEX.md", "guide.md"]


@pytest.mark.integration
def test_failing_loader_does_not_stop_its_siblings(tmp_path: Path, repo: Path) -> None:
    with ContextEngine(make_settings(tmp_path), discovery_engine=AlwaysFailingDiscovery()) as engine:
        result = engine.load_context(repo / "src")

    assert [e.priority_score for e in result.entry_snapshot] == [500, 100, 90]
    assert len(result.errors) == 1
    assert result.errors[0].startswith("Failed to load subdirectory context")


@pytest.mark.integration
def test_cancelled_run_is_returned_but_not_cached(tmp_path: Path, repo: Path) -> None:
    token = CancellationToken()
    token.cancel()

    with ContextEngine(make_settings(tmp_path)) as engine:
        cancelled = engine.load_context(repo / "src", cancel=token)
        key = cancelled.key
        cached = key in engine.cache
        complete = engine.load_context(repo / "src")

    assert cancelled.errors[-1] == "context loading cancelled: cancelled by caller"
    assert not cached
    assert complete.errors == ()
    assert len(complete.entry_snapshot) > len(cancelled.entry_snapshot)


@pytest.mark.integration
def test_results_are_offered_to_the_store(tmp_path: Path, repo: Path) -> None:
    store_path = tmp_path / "memory.jsonl"

    with ContextEngine(make_settings(tmp_path, store_path=store_path)) as engine:
        result = engine.load_context(repo / "src")

    records = JsonlContextStore(store_path).read_all()
    assert len(records) == 1
    assert records[0]["key"] == "project_context"
    assert records[0]["value"]["document"] == result.composed_document
    assert records[0]["value"]["stats"]["file_count"] == result.stats.file_count


@pytest.mark.integration
def test_store_failures_are_swallowed(tmp_path: Path, repo: Path, mocker: MockerFixture) -> None:
    store = mocker.Mock()
    store.store.side_effect = StoreError(key="project_context", message="read-only")

    with ContextEngine(make_settings(tmp_path), store=store) as engine:
        result = engine.load_context(repo / "src")

    store.store.assert_called_once()
    assert result.errors == ()


@pytest.mark.integration
def test_context_loaded_event(tmp_path: Path, repo: Path) -> None:
    loaded: list[dict[str, Any]] = []

    with ContextEngine(make_settings(tmp_path)) as engine:
        engine.events.subscribe(ContextEvent.CONTEXT_LOADED, loaded.append)
        result = engine.load_context(repo / "src")
        engine.load_context(repo / "src")

    assert len(loaded) == 1
    assert loaded[0]["result"] is result


@pytest.mark.integration
def test_unreadable_start_directory_raises(tmp_path: Path) -> None:
    with ContextEngine(make_settings(tmp_path)) as engine, pytest.raises(UnreadableDirectoryError):
        engine.load_context(tmp_path / "missing")


@pytest.mark.integration
def test_clear_cache(tmp_path: Path, repo: Path) -> None:
    with ContextEngine(make_settings(tmp_path)) as engine:
        engine.load_context(repo / "src")
        engine.load_full_context(repo / "src")
        assert engine.get_cache_statistics().entry_count == 2
        engine.clear_cache()
        stats = engine.get_cache_statistics()

    assert stats.entry_count == 0
    assert stats.newest_timestamp is None
