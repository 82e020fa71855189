import asyncio
import threading
from types import MappingProxyType

import pytest

from deck.errors import SessionNotFound, ValidationError
from deck.kv_cache import task_backup_key
from deck.models import BackgroundJob, JobKind, JobStatus
from deck.switcher import SwitchPhase

from conftest import PROJECT_DIR

async def make_session(repo, name, **fields):
    return await repo.create_session({"name": name, "project_directory": PROJECT_DIR, **fields})

async def wait_for_phase(ws, phase, timeout=2.0):
    async def _poll():
        while ws.phase is not phase:
            await asyncio.sleep(0.005)
    await asyncio.wait_for(_poll(), timeout)

def entry_flags(ws):
    return {p: (e.included, e.force_excluded) for p, e in ws.files_map.items()}

def test_switching_persists_outgoing_selection_and_resets_incoming(make_workspace, repo, catalog):
    async def run():
        x = await make_session(repo, "X", included_files=["a.ts"], force_excluded_files=["c.ts"])
        y = await make_session(repo, "Y")
        ws = make_workspace()

        await ws.switch_session(x)
        assert entry_flags(ws) == {
            "a.ts": (True, False),
            "b.ts": (False, False),
            "c.ts": (False, True),
        }

        ws.toggle_file_selection("b.ts")
        gate = catalog.hold_next()
        to_y = asyncio.create_task(ws.switch_session(y))
        await wait_for_phase(ws, SwitchPhase.APPLYING_INCOMING)
        assert ws.store.is_empty()
        gate.set()
        assert await to_y is SwitchPhase.READY

        saved_x = await repo.get_session(x)
        assert saved_x.included_files == ["a.ts", "b.ts"]
        assert saved_x.force_excluded_files == ["c.ts"]
        assert entry_flags(ws) == {p: (False, False) for p in ("a.ts", "b.ts", "c.ts")}
        assert (await repo.get_session(y)).included_files == []

    asyncio.run(run())

def test_toggle_schedules_debounced_save(make_workspace, repo):
    async def run():
        a = await make_session(repo, "A")
        ws = make_workspace()
        await ws.switch_session(a)

        ws.toggle_file_selection("a.ts")
        ws.toggle_file_exclusion("c.ts")
        assert ws.is_dirty
        await asyncio.sleep(0.2)

        assert len(repo.writes) == 1
        saved = await repo.get_session(a)
        assert saved.included_files == ["a.ts"]
        assert saved.force_excluded_files == ["c.ts"]
        assert not ws.is_dirty

    asyncio.run(run())

def test_open_restores_remembered_session(make_workspace, repo):
    async def run():
        a = await make_session(repo, "A", included_files=["b.ts"])
        first = make_workspace()
        await first.switch_session(a)
        await first.close()

        second = make_workspace()
        assert await second.open() is SwitchPhase.READY
        assert second.active_session_id == a
        assert second.included_paths == ("b.ts",)

    asyncio.run(run())

def test_open_without_session_lists_files(make_workspace):
    async def run():
        ws = make_workspace()
        assert await ws.open() is SwitchPhase.IDLE
        assert sorted(ws.files_map) == ["a.ts", "b.ts", "c.ts"]
        assert ws.active_session_id is None

    asyncio.run(run())

def test_catalog_failure_is_reported(make_workspace, catalog):
    async def run():
        catalog.fail = OSError("permission denied")
        ws = make_workspace()
        await ws.open()
        assert ws.errors[-1][0] == "Could not load project files"
        assert "permission denied" in ws.errors[-1][1]

    asyncio.run(run())

def test_apply_selections_from_pasted_text(make_workspace, repo):
    async def run():
        a = await make_session(repo, "A", included_files=["c.ts"])
        ws = make_workspace()
        await ws.switch_session(a)

        unknown = ws.apply_selections_from_paths("a.ts\n./b.ts\nzzz.ts")
        assert unknown == ["zzz.ts"]
        assert ws.included_paths == ("a.ts", "b.ts")
        assert ws.fields.pasted_paths == "a.ts\n./b.ts\nzzz.ts"

        ws.apply_selections_from_paths(["c.ts"], mode="extend")
        assert ws.included_paths == ("a.ts", "b.ts", "c.ts")

        with pytest.raises(ValueError):
            ws.apply_selections_from_paths("a.ts", mode="merge")

    asyncio.run(run())

def test_regex_field_errors_are_exposed(make_workspace, repo):
    async def run():
        a = await make_session(repo, "A")
        ws = make_workspace()
        await ws.switch_session(a)

        assert ws.set_regex("title_regex", "[broken") is not None
        assert isinstance(ws.field_errors, MappingProxyType)
        assert "title_regex" in ws.field_errors
        assert ws.set_regex("title_regex", "ok") is None
        assert dict(ws.field_errors) == {}

        assert ws.toggle_regex_active() is False
        ws.clear_regex_patterns()
        assert ws.fields.regex.title_regex == ""

    asyncio.run(run())

def test_flush_now_requires_ready_session(make_workspace, repo):
    async def run():
        ws = make_workspace()
        assert await ws.flush_now() is False

        a = await make_session(repo, "A")
        await ws.switch_session(a)
        ws.set_search_term("router")
        ws.set_diff_temperature(0.3)
        assert await ws.flush_now() is True
        saved = await repo.get_session(a)
        assert saved.search_term == "router"
        assert saved.diff_temperature == 0.3

    asyncio.run(run())

def test_reload_keeps_unsaved_edits(make_workspace, repo):
    async def run():
        a = await make_session(repo, "A")
        ws = make_workspace(debounce_seconds=10)
        await ws.switch_session(a)
        ws.set_pasted_paths("a.ts")

        assert await ws.reload_session() is SwitchPhase.READY
        assert ws.fields.pasted_paths == "a.ts"

    asyncio.run(run())

def test_create_session_from_current_state(make_workspace, repo):
    async def run():
        a = await make_session(repo, "A", included_files=["a.ts"], task_description="task A")
        ws = make_workspace()
        await ws.switch_session(a)

        copy = await ws.create_session("copy")
        assert ws.active_session_id == copy
        assert ws.included_paths == ("a.ts",)
        stored = await repo.get_session(copy)
        assert stored.name == "copy"
        assert stored.project_directory == PROJECT_DIR
        assert stored.task_description == "task A"

        blank = await ws.create_session("blank", task_description="new task", from_current=False)
        assert ws.included_paths == ()
        assert ws.fields.task_description == "new task"
        assert [s.name for s in await ws.list_sessions()][0] == "blank"
        assert blank != copy

    asyncio.run(run())

def test_delete_active_session_drops_unsaved_edits(make_workspace, repo, kv):
    async def run():
        a = await make_session(repo, "A")
        ws = make_workspace()
        await ws.switch_session(a)
        ws.set_task_description("draft")
        assert kv.get(task_backup_key(a)) == "draft"

        await ws.delete_session(a)
        await asyncio.sleep(0.1)
        assert ws.active_session_id is None
        assert ws.phase is SwitchPhase.IDLE
        assert repo.writes == []
        assert kv.get(task_backup_key(a)) is None
        with pytest.raises(SessionNotFound):
            await repo.get_session(a)

    asyncio.run(run())

def test_rename_and_list_sessions(make_workspace, repo):
    async def run():
        a = await make_session(repo, "A")
        await repo.create_session({"name": "other project", "project_directory": "/elsewhere"})
        ws = make_workspace()

        await ws.rename_session(a, "Renamed")
        assert [s.name for s in await ws.list_sessions()] == ["Renamed"]

    asyncio.run(run())

def test_set_project_directory_saves_and_detaches(make_workspace, repo, catalog):
    async def run():
        catalog.set_files("/other", ["x.py"])
        a = await make_session(repo, "A")
        ws = make_workspace(debounce_seconds=10)
        await ws.switch_session(a)
        ws.set_search_term("auth")

        assert await ws.set_project_directory("/other") is SwitchPhase.IDLE
        assert (await repo.get_session(a)).search_term == "auth"
        assert ws.active_session_id is None
        assert list(ws.files_map) == ["x.py"]
        assert ws.fields.search_term == ""

        assert await ws.set_project_directory(PROJECT_DIR) is SwitchPhase.READY
        assert ws.active_session_id == a
        assert ws.fields.search_term == "auth"

    asyncio.run(run())

def test_file_finder_result_is_applied_and_saved(make_workspace, repo):
    def runner(kind, payload, cancel_event):
        assert payload["task"] == "login flow"
        assert sorted(payload["paths"]) == ["a.ts", "b.ts", "c.ts"]
        return "a.ts\nb.ts", {}

    async def run():
        a = await make_session(repo, "A", task_description="login flow", included_files=["c.ts"])
        ws = make_workspace(runner=runner)
        await ws.switch_session(a)

        job_id = ws.find_relevant_files(mode="replace")
        assert ws.is_finding_files
        await ws.run_job_poller(until_idle=True, interval=0.01)

        assert not ws.is_finding_files
        assert ws.reconciler.is_processed(job_id)
        assert ws.included_paths == ("a.ts", "b.ts")
        assert ws.fields.pasted_paths == "a.ts\nb.ts"
        await asyncio.sleep(0.15)
        assert (await repo.get_session(a)).included_files == ["a.ts", "b.ts"]

    asyncio.run(run())

def test_stale_file_finder_result_is_discarded(make_workspace, repo):
    release = threading.Event()

    def runner(kind, payload, cancel_event):
        release.wait(5)
        return "a.ts\nb.ts", {}

    async def run():
        a = await make_session(repo, "A", task_description="find auth")
        b = await make_session(repo, "B", included_files=["c.ts"])
        ws = make_workspace(runner=runner)
        await ws.switch_session(a)

        job_id = ws.find_relevant_files()
        await ws.switch_session(b)
        assert not ws.is_finding_files

        release.set()
        await ws.job_service.wait(job_id)
        assert ws.poll_jobs() == []
        assert ws.included_paths == ("c.ts",)
        assert ws.fields.pasted_paths == ""

        await ws.switch_session(a)
        assert ws.poll_jobs() == []
        assert ws.included_paths == ()

    asyncio.run(run())

def test_jobs_require_active_session_and_task(make_workspace, repo):
    async def run():
        ws = make_workspace(runner=lambda kind, payload, ev: ("", {}))
        with pytest.raises(ValidationError):
            ws.find_relevant_files()

        a = await make_session(repo, "A")
        await ws.switch_session(a)
        with pytest.raises(ValidationError) as exc:
            ws.generate_regex()
        assert exc.value.field_name == "task_description"
        with pytest.raises(ValidationError):
            ws.improve_text("search_term")
        with pytest.raises(ValueError):
            ws.improve_text("name")

    asyncio.run(run())

def test_improve_text_rewrites_selected_range(make_workspace, repo):
    seen = []

    def runner(kind, payload, cancel_event):
        seen.append(payload["text"])
        return "the", {}

    async def run():
        a = await make_session(repo, "A", task_description="fix teh bug")
        ws = make_workspace(runner=runner)
        await ws.switch_session(a)

        ws.set_task_selection(7, 4)
        ws.improve_text()
        await ws.run_job_poller(until_idle=True, interval=0.01)

        assert seen == ["teh"]
        assert ws.fields.task_description == "fix the bug"

    asyncio.run(run())

def test_generated_regex_is_applied(make_workspace, repo):
    applied = []

    def runner(kind, payload, cancel_event):
        return '{"titleRegex": "auth"}', {"regex_patterns": {"title_regex": "auth"}}

    async def run():
        a = await make_session(repo, "A", task_description="auth", is_regex_active=False)
        ws = make_workspace(runner=runner, on_regex_applied=applied.append)
        await ws.switch_session(a)

        ws.generate_regex()
        await ws.run_job_poller(until_idle=True, interval=0.01)

        assert ws.fields.regex.title_regex == "auth"
        assert ws.fields.regex.is_regex_active is True
        assert applied == [1]

    asyncio.run(run())

def test_failed_job_reports_error(make_workspace, repo):
    errors = []

    def runner(kind, payload, cancel_event):
        raise RuntimeError("model unavailable")

    async def run():
        a = await make_session(repo, "A", task_description="task")
        ws = make_workspace(runner=runner, on_error=lambda title, msg: errors.append(title))
        await ws.switch_session(a)

        ws.find_relevant_files()
        await ws.run_job_poller(until_idle=True, interval=0.01)
        assert errors == ["File finder failed"]
        assert not ws.has_running_jobs()

    asyncio.run(run())

def test_replaced_selection_survives_reload(make_workspace, repo):
    async def run():
        a = await make_session(repo, "A")
        b = await make_session(repo, "B")
        ws = make_workspace(include_policy=lambda path: True)
        await ws.switch_session(a)
        assert ws.included_paths == ("a.ts", "b.ts", "c.ts")

        ws.apply_selections_from_paths(["a.ts"])
        ws.toggle_file_exclusion("c.ts")
        await ws.flush_now()
        saved = await repo.get_session(a)
        assert saved.included_files == ["a.ts"]
        assert saved.has_saved_selection is True

        await ws.reload_session()
        assert ws.included_paths == ("a.ts",)
        assert ws.excluded_paths == ("c.ts",)

        await ws.switch_session(b)
        assert ws.included_paths == ("a.ts", "b.ts", "c.ts")
        await ws.switch_session(a)
        assert ws.included_paths == ("a.ts",)

        fresh = make_workspace(include_policy=lambda path: True)
        await fresh.switch_session(a)
        assert fresh.included_paths == ("a.ts",)

    asyncio.run(run())

def test_job_finished_mid_switch_is_applied_once_ready(make_workspace, repo, catalog):
    async def run():
        b = await make_session(repo, "B", included_files=["c.ts"])
        ws = make_workspace()
        gate = catalog.hold_next()
        to_b = asyncio.create_task(ws.switch_session(b))
        await wait_for_phase(ws, SwitchPhase.APPLYING_INCOMING)

        found = BackgroundJob(id="job_found", session_id=b, kind=JobKind.FILE_FINDER,
                              status=JobStatus.COMPLETED, response="a.ts\nb.ts",
                              metadata={"mode": "replace"})
        assert ws.reconciler.observe([found]) == []
        assert not ws.reconciler.is_processed("job_found")

        gate.set()
        assert await to_b is SwitchPhase.READY
        assert ws.included_paths == ("c.ts",)
        assert ws.reconciler.observe([found]) == ["job_found"]
        assert ws.included_paths == ("a.ts", "b.ts")

    asyncio.run(run())
