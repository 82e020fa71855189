import asyncio

from deck.kv_cache import task_backup_key
from deck.switcher import SwitchPhase

from conftest import PROJECT_DIR

async def make_session(repo, name, **fields):
    return await repo.create_session({"name": name, "project_directory": PROJECT_DIR, **fields})

async def wait_for_phase(ws, phase, timeout=2.0):
    async def _poll():
        while ws.phase is not phase:
            await asyncio.sleep(0.005)
    await asyncio.wait_for(_poll(), timeout)

def test_switch_applies_fields_and_deferred_selection(make_workspace, repo):
    async def run():
        a = await make_session(repo, "A", task_description="task A", included_files=["a.ts"],
                               force_excluded_files=["c.ts"], title_regex="auth")
        ws = make_workspace()

        assert await ws.switch_session(a) is SwitchPhase.READY
        assert ws.active_session_id == a
        assert ws.included_paths == ("a.ts",)
        assert ws.excluded_paths == ("c.ts",)
        assert ws.fields.task_description == "task A"
        assert ws.fields.regex.title_regex == "auth"
        assert not ws.is_dirty

    asyncio.run(run())

def test_switch_is_atomic_when_incoming_read_is_delayed(make_workspace, repo):
    async def run():
        a = await make_session(repo, "A", included_files=["a.ts"])
        b = await make_session(repo, "B", task_description="task B", included_files=["b.ts"])
        c = await make_session(repo, "C", task_description="task C", included_files=["c.ts"])
        ws = make_workspace()
        await ws.switch_session(a)

        ws.set_task_description("unsaved edits in A")
        ws.toggle_file_selection("c.ts")
        assert ws.is_dirty

        gate = asyncio.Event()
        repo.read_gates[b] = gate
        to_b = asyncio.create_task(ws.switch_session(b))
        await wait_for_phase(ws, SwitchPhase.LOADING_INCOMING)

        saved_a = await repo.get_session(a)
        assert saved_a.task_description == "unsaved edits in A"
        assert saved_a.included_files == ["a.ts", "c.ts"]
        # Reset happened before the incoming read
        assert ws.store.is_empty()
        assert ws.fields.task_description == ""

        assert await ws.switch_session(c) is SwitchPhase.READY
        gate.set()
        await to_b

        assert ws.active_session_id == c
        assert ws.phase is SwitchPhase.READY
        assert ws.included_paths == ("c.ts",)
        assert ws.fields.task_description == "task C"
        assert b not in [sid for sid, _ in repo.writes]
        assert (await repo.get_session(a)).included_files == ["a.ts", "c.ts"]

    asyncio.run(run())

def test_abandoned_switch_never_lands_when_catalog_is_delayed(make_workspace, repo, catalog):
    async def run():
        b = await make_session(repo, "B", task_description="task B", included_files=["b.ts"])
        c = await make_session(repo, "C", task_description="task C", included_files=["a.ts"])
        ws = make_workspace()

        gate = catalog.hold_next()
        to_b = asyncio.create_task(ws.switch_session(b))
        await wait_for_phase(ws, SwitchPhase.APPLYING_INCOMING)
        assert ws.fields.task_description == "task B"

        assert await ws.switch_session(c) is SwitchPhase.READY
        gate.set()
        await to_b

        assert ws.active_session_id == c
        assert ws.included_paths == ("a.ts",)
        assert ws.fields.task_description == "task C"
        assert not ws.catalog.has_deferred_selections

    asyncio.run(run())

def test_switch_to_missing_session_falls_back_to_idle(make_workspace, repo):
    async def run():
        a = await make_session(repo, "A", included_files=["a.ts"])
        ws = make_workspace()
        await ws.switch_session(a)

        phase = await ws.switch_session("session_0000000000000000")
        assert phase is SwitchPhase.IDLE
        assert ws.active_session_id is None
        assert ws.store.is_empty()
        assert ws.fields.task_description == ""
        assert ws.errors[-1][0] == "Session not found"

    asyncio.run(run())

def test_switch_to_none_saves_outgoing_and_clears(make_workspace, repo):
    async def run():
        a = await make_session(repo, "A")
        ws = make_workspace()
        await ws.switch_session(a)
        ws.set_search_term("router")

        assert await ws.switch_session(None) is SwitchPhase.IDLE
        assert ws.store.is_empty()
        assert ws.active_session_id is None
        assert (await repo.get_session(a)).search_term == "router"

    asyncio.run(run())

def test_switch_to_same_session_is_a_noop(make_workspace, repo, catalog):
    async def run():
        a = await make_session(repo, "A", included_files=["a.ts"])
        ws = make_workspace()
        await ws.switch_session(a)
        calls = len(catalog.calls)

        assert await ws.switch_session(a) is SwitchPhase.READY
        assert len(catalog.calls) == calls

    asyncio.run(run())

def test_reload_rereads_persisted_state(make_workspace, repo, catalog):
    async def run():
        a = await make_session(repo, "A", included_files=["a.ts"])
        ws = make_workspace()
        await ws.switch_session(a)
        calls = len(catalog.calls)

        await repo.update_session(a, {"included_files": ["b.ts"], "task_description": "changed elsewhere"})
        assert await ws.reload_session() is SwitchPhase.READY
        assert len(catalog.calls) == calls + 1
        assert ws.included_paths == ("b.ts",)
        assert ws.fields.task_description == "changed elsewhere"

    asyncio.run(run())

def test_clean_outgoing_session_is_not_rewritten(make_workspace, repo):
    async def run():
        a = await make_session(repo, "A")
        b = await make_session(repo, "B")
        ws = make_workspace()
        await ws.switch_session(a)
        await ws.switch_session(b)
        assert repo.writes == []

    asyncio.run(run())

def test_outgoing_save_failure_is_reported_and_retried(make_workspace, repo):
    async def run():
        a = await make_session(repo, "A")
        b = await make_session(repo, "B", task_description="task B")
        ws = make_workspace()
        await ws.switch_session(a)
        ws.set_task_description("edit made before the disk filled up")

        repo.fail_writes = True
        assert await ws.switch_session(b) is SwitchPhase.READY
        assert ("Could not save session" in [title for title, _ in ws.errors])
        assert ws.fields.task_description == "task B"
        assert ws.persister.unsaved_sessions == (a,)

        repo.fail_writes = False
        ws.set_search_term("next edit in B")
        await asyncio.sleep(0.2)
        assert (await repo.get_session(a)).task_description == "edit made before the disk filled up"
        assert (await repo.get_session(b)).search_term == "next edit in B"
        assert ws.persister.unsaved_sessions == ()

    asyncio.run(run())

def test_task_backup_restores_empty_task(make_workspace, repo, kv):
    async def run():
        a = await make_session(repo, "A")
        kv.set(task_backup_key(a), "recovered draft")
        ws = make_workspace()
        await ws.switch_session(a)

        assert ws.fields.task_description == "recovered draft"
        assert ws.is_dirty

    asyncio.run(run())

def test_task_changes_are_backed_up(make_workspace, repo, kv):
    async def run():
        a = await make_session(repo, "A")
        ws = make_workspace()
        await ws.switch_session(a)
        ws.set_task_description("draft")
        assert kv.get(task_backup_key(a)) == "draft"

        await ws.switch_session(None)
        ws.set_task_description("no session draft")
        assert kv.get(task_backup_key(None)) == "no session draft"
        assert task_backup_key(None).endswith("__no_session__")

    asyncio.run(run())

def test_held_edits_land_before_switching_back(make_workspace, repo):
    async def run():
        a = await make_session(repo, "A")
        b = await make_session(repo, "B")
        ws = make_workspace()
        await ws.switch_session(a)
        ws.set_search_term("held")

        repo.fail_writes = True
        await ws.switch_session(b)
        repo.fail_writes = False

        assert await ws.switch_session(a) is SwitchPhase.READY
        assert ws.fields.search_term == "held"
        assert ws.persister.unsaved_sessions == ()

    asyncio.run(run())

def test_failed_catalog_load_keeps_saved_selection(make_workspace, repo, catalog):
    async def run():
        b = await make_session(repo, "B", included_files=["a.ts"], force_excluded_files=["c.ts"])
        ws = make_workspace()
        catalog.fail = OSError("network down")

        assert await ws.switch_session(b) is SwitchPhase.READY
        assert ws.store.is_empty()
        assert ws.errors[-1][0] == "Could not load project files"

        ws.set_task_description("typing")
        await asyncio.sleep(0.2)
        saved = await repo.get_session(b)
        assert saved.task_description == "typing"
        assert saved.included_files == ["a.ts"]
        assert saved.force_excluded_files == ["c.ts"]

        catalog.fail = None
        assert await ws.refresh_files() is True
        assert ws.included_paths == ("a.ts",)
        assert ws.excluded_paths == ("c.ts",)

    asyncio.run(run())
