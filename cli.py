"""CLI implementation for contextdeck."""
import argparse
import asyncio
import logging
import os
import sys

from deck import DeckError, JobStatus, Workspace, config
from application_state import (
    init_app_state, setup_logging, load_project_history, open_workspace, drain_notifications
)

def _flag(entry) -> str:
    if entry.force_excluded:
        return "[-]"
    return "[x]" if entry.included else "[ ]"

def _print_session(ws: Workspace) -> None:
    fields = ws.fields
    print(f"Session: {ws.active_session_id}")
    print(f"Task: {fields.task_description or '(empty)'}")
    for name in ("title_regex", "content_regex", "negative_title_regex", "negative_content_regex"):
        value = getattr(fields.regex, name)
        if value:
            print(f"{name}: {value}")
    print(f"Regex filter: {'on' if fields.regex.is_regex_active else 'off'}")
    print(f"Included ({len(ws.included_paths)}):")
    for p in ws.included_paths:
        print(f"  {p}")
    if ws.excluded_paths:
        print(f"Excluded ({len(ws.excluded_paths)}):")
        for p in ws.excluded_paths:
            print(f"  {p}")

async def _use_session(ws: Workspace, session_id: str) -> None:
    await ws.switch_session(session_id)
    if ws.active_session_id != session_id:
        raise DeckError(f"Could not open session {session_id}")

async def _run_job(ws: Workspace, job_id: str) -> bool:
    print(f"Waiting for job {job_id}...", file=sys.stderr)
    await ws.run_job_poller(until_idle=True, interval=0.1)
    job = ws.job_service.get_job(job_id)
    if job is None or job.status is not JobStatus.COMPLETED:
        return False
    await ws.flush_now()
    return True

async def _dispatch(args, ws: Workspace) -> int:
    cmd = args.command

    if cmd == "sessions":
        sessions = await ws.list_sessions()
        if not sessions:
            print("No sessions for this directory.")
        for s in sessions:
            marker = "*" if s.id == ws.active_session_id else " "
            print(f"{marker} {s.id}  {s.name}  ({len(s.included_files)} files)")
        return 0

    if cmd == "create":
        await ws.open()
        session_id = await ws.create_session(args.name, task_description=args.task)
        print(session_id)
        return 0

    if cmd == "delete":
        await ws.delete_session(args.id)
        print(f"Deleted session {args.id}")
        return 0

    if cmd == "rename":
        session = await ws.rename_session(args.id, args.name)
        print(f"Renamed {session.id} to {session.name!r}")
        return 0

    if cmd == "files":
        if args.session:
            await _use_session(ws, args.session)
        else:
            await ws.open()
        for path, entry in sorted(ws.files_map.items()):
            print(f"{_flag(entry)} {path}")
        return 0

    await _use_session(ws, args.id)

    if cmd == "show":
        _print_session(ws)
        return 0

    if cmd == "include":
        unknown = ws.apply_selections_from_paths(args.paths, mode="extend")
        for p in unknown:
            print(f"Warning: not in project: {p}", file=sys.stderr)
        await ws.flush_now()
        print(f"{len(ws.included_paths)} files included")
        return 0

    if cmd == "exclude":
        for p in args.paths:
            entry = ws.files_map.get(p)
            if entry is None:
                print(f"Warning: not in project: {p}", file=sys.stderr)
            elif not entry.force_excluded:
                ws.toggle_file_exclusion(p)
        await ws.flush_now()
        print(f"{len(ws.excluded_paths)} files excluded")
        return 0

    if cmd == "find":
        job_id = ws.find_relevant_files(mode="extend" if args.extend else "replace")
        if not await _run_job(ws, job_id):
            return 1
        for p in ws.included_paths:
            print(p)
        return 0

    if cmd == "regex":
        job_id = ws.generate_regex()
        if not await _run_job(ws, job_id):
            return 1
        _print_session(ws)
        return 0

    if cmd == "improve":
        job_id = ws.improve_text()
        if not await _run_job(ws, job_id):
            return 1
        print(ws.fields.task_description)
        return 0

    return 1

async def _run(args) -> int:
    ws = open_workspace(args.dir)
    try:
        return await _dispatch(args, ws)
    finally:
        await ws.close()

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="contextdeck",
        description="contextdeck - task sessions and file selection for AI coding context",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  contextdeck create "Auth refactor" --task "Move token checks into middleware"
  contextdeck files --session session_ab12...
  contextdeck include session_ab12... src/auth.py src/middleware.py
  contextdeck find session_ab12... --extend
"""
    )
    parser.add_argument("--dir", default=os.getcwd(), help="Project directory (default: current)")
    parser.add_argument("-m", "--model", help="Model to use for AI commands")

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    subparsers.add_parser("sessions", help="List sessions for the project")

    create_parser = subparsers.add_parser("create", help="Create a session from the current selection")
    create_parser.add_argument("name", help="Session name")
    create_parser.add_argument("--task", help="Task description")

    show_parser = subparsers.add_parser("show", help="Show a session")
    show_parser.add_argument("id", help="Session id")

    delete_parser = subparsers.add_parser("delete", help="Delete a session")
    delete_parser.add_argument("id", help="Session id")

    rename_parser = subparsers.add_parser("rename", help="Rename a session")
    rename_parser.add_argument("id", help="Session id")
    rename_parser.add_argument("name", help="New name")

    files_parser = subparsers.add_parser("files", help="List project files with selection flags")
    files_parser.add_argument("--session", help="Show the selection of this session")

    include_parser = subparsers.add_parser("include", help="Include files in a session")
    include_parser.add_argument("id", help="Session id")
    include_parser.add_argument("paths", nargs="+", help="Project-relative paths")

    exclude_parser = subparsers.add_parser("exclude", help="Force-exclude files from a session")
    exclude_parser.add_argument("id", help="Session id")
    exclude_parser.add_argument("paths", nargs="+", help="Project-relative paths")

    find_parser = subparsers.add_parser("find", help="Let the AI pick files for the session task")
    find_parser.add_argument("id", help="Session id")
    find_parser.add_argument("--extend", action="store_true", help="Add to the selection instead of replacing it")

    regex_parser = subparsers.add_parser("regex", help="Generate regex filters for the session task")
    regex_parser.add_argument("id", help="Session id")

    improve_parser = subparsers.add_parser("improve", help="Improve the session task description")
    improve_parser.add_argument("id", help="Session id")

    return parser

def run_cli(argv: list[str] | None = None) -> int:
    """Run in CLI mode with subcommands."""
    init_app_state()

    # CLI logs to stderr as well as the log file
    setup_logging(enable_notifications=False)
    console = logging.StreamHandler()
    console.setLevel(logging.WARNING)
    logging.getLogger().addHandler(console)
    load_project_history()

    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 0

    if args.model:
        config.model = args.model

    try:
        code = asyncio.run(_run(args))
    except DeckError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    for note in drain_notifications():
        print(f"{note.title}: {note.message}", file=sys.stderr)
    return code
