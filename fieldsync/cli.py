from __future__ import annotations

import argparse
import json
import logging
import signal
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Sequence

from dotenv import load_dotenv

from .config import Settings, load_settings
from .connectivity import ConnectivityProbe
from .datastores import Datastore, RestDatastore, SqlDatastore
from .forms import FormsClient, FormsConfig, FormsSubmitter
from .models import AgentSnapshot, RegistrationPayload, RegistrationValidationError, SyncResult
from .notifications import DatastoreNotificationSink
from .observability import configure_logging
from .queue import SqliteQueue
from .scheduler import AutoSyncScheduler
from .sync import RegistrationSync, SyncOrchestrator


logger = logging.getLogger("fieldsync.cli")


@dataclass
class Runtime:
    settings: Settings
    queue: SqliteQueue
    datastore: Datastore
    probe: ConnectivityProbe
    routine: RegistrationSync
    orchestrator: SyncOrchestrator


def build_datastore(settings: Settings) -> Datastore:
    if settings.database_url:
        return SqlDatastore.from_url(settings.database_url)
    return RestDatastore(
        settings.backend_url,
        settings.backend_anon_key,
        access_token=settings.backend_access_token,
        timeout_s=settings.backend_timeout_s,
    )


def build_runtime(settings: Settings, *, datastore: Datastore | None = None) -> Runtime:
    queue = SqliteQueue(
        settings.queue_db_path,
        journal_mode=settings.queue_journal_mode,
        synchronous=settings.queue_synchronous,
        recover_corruption=settings.queue_recover_corruption,
    )
    store = datastore if datastore is not None else build_datastore(settings)
    forms_config = FormsConfig(
        form_id=settings.forms_form_id,
        tenant_id=settings.forms_tenant_id,
        user_id=settings.forms_user_id,
        response_page_url=settings.forms_response_page_url,
        timeout_s=settings.forms_timeout_s,
    )
    routine = RegistrationSync(
        queue,
        store,
        FormsSubmitter(FormsClient(forms_config)),
        DatastoreNotificationSink(store),
        notify_after_retries=settings.sync_notify_after_retries,
    )
    probe = ConnectivityProbe(store, timeout_s=settings.connectivity_timeout_s)
    orchestrator = SyncOrchestrator(
        queue,
        store,
        routine,
        probe,
        pace_s=settings.sync_pace_s,
        stale_syncing_s=settings.queue_stale_syncing_s,
    )
    return Runtime(
        settings=settings,
        queue=queue,
        datastore=store,
        probe=probe,
        routine=routine,
        orchestrator=orchestrator,
    )


def _print_result(result: SyncResult) -> int:
    print(f"[sync] {result.summary()}")
    for err in result.errors:
        print(f"  - {err}")
    return 0 if result.success and result.failed == 0 else 1


def _progress(current: int, total: int) -> None:
    print(f"[sync] {current}/{total}")


def _cmd_pending(runtime: Runtime, args: argparse.Namespace) -> int:
    entries = runtime.queue.list_pending(args.agent_id)
    for entry in entries:
        line = f"{entry.id}  {entry.status.value:<8} retries={entry.retry_count}  {entry.customer.customer_name}"
        if entry.error:
            line += f"  ({entry.error})"
        print(line)
    print(f"[pending] count={runtime.queue.count(args.agent_id)}")
    return 0


def _cmd_enqueue(runtime: Runtime, args: argparse.Namespace) -> int:
    raw: Any = json.loads(Path(args.payload).read_text(encoding="utf-8"))
    agent = AgentSnapshot(name=args.agent_name, mobile=args.agent_mobile)
    try:
        if args.offline:
            queue_id = runtime.queue.enqueue(args.agent_id, RegistrationPayload.from_mapping(raw), agent)
            if queue_id is None:
                print("[enqueue] offline queue unavailable")
                return 1
            print(f"[enqueue] queued id={queue_id}")
            return 0
        outcome = runtime.orchestrator.capture_registration(args.agent_id, raw, agent)
    except RegistrationValidationError as exc:
        print(f"[enqueue] invalid registration: {exc}")
        return 2

    if outcome.queued:
        print(f"[enqueue] queued id={outcome.queue_id}")
    elif outcome.remote_id:
        state = "submitted" if outcome.submitted else "stored, not yet submitted"
        print(f"[enqueue] registration {outcome.remote_id} {state}")
    if outcome.error:
        print(f"  - {outcome.error}")
    return 0 if (outcome.queued or outcome.remote_id) else 1


def _cmd_sync(runtime: Runtime, args: argparse.Namespace) -> int:
    on_progress = None if args.quiet else _progress
    if args.all:
        result = runtime.orchestrator.sync_everything(args.agent_id, on_progress)
    else:
        result = runtime.orchestrator.sync_pending_registrations(args.agent_id, on_progress)
    return _print_result(result)


def _cmd_sync_one(runtime: Runtime, args: argparse.Namespace) -> int:
    item = runtime.orchestrator.sync_registration(args.registration_id)
    if item.success:
        print(f"[sync-one] {args.registration_id} synced")
        return 0
    print(f"[sync-one] {args.registration_id} failed: {item.error}")
    return 1


def _cmd_watch(runtime: Runtime, args: argparse.Namespace) -> int:
    stop = threading.Event()

    def _on_complete(result: SyncResult) -> None:
        if result.synced or result.failed:
            _print_result(result)

    scheduler = AutoSyncScheduler(
        runtime.orchestrator,
        agent_id=args.agent_id,
        interval_s=runtime.settings.sync_interval_s,
        on_complete=_on_complete,
    )

    def _handle_signal(signum: int, _frame: Any) -> None:
        logger.info("received signal %s; stopping", signum)
        stop.set()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    scheduler.start()
    try:
        while not stop.wait(1.0):
            pass
    finally:
        scheduler.stop()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="fieldsync", description="Offline-first registration sync")
    sub = parser.add_subparsers(dest="command", required=True)

    p_pending = sub.add_parser("pending", help="List queued registrations")
    p_pending.add_argument("--agent-id", default=None, help="Only entries owned by this agent")
    p_pending.set_defaults(func=_cmd_pending)

    p_enqueue = sub.add_parser("enqueue", help="Capture a registration from a JSON file")
    p_enqueue.add_argument("--agent-id", required=True)
    p_enqueue.add_argument("--agent-name", required=True)
    p_enqueue.add_argument("--agent-mobile", required=True)
    p_enqueue.add_argument("--payload", required=True, help="Path to the registration JSON (camelCase keys)")
    p_enqueue.add_argument("--offline", action="store_true", help="Queue locally without contacting the backend")
    p_enqueue.set_defaults(func=_cmd_enqueue)

    p_sync = sub.add_parser("sync", help="Run one batch sync")
    p_sync.add_argument("--agent-id", required=True)
    p_sync.add_argument("--all", action="store_true", help="Also sweep datastore rows missing a response id")
    p_sync.add_argument("--quiet", action="store_true", help="Do not print per-item progress")
    p_sync.set_defaults(func=_cmd_sync)

    p_one = sub.add_parser("sync-one", help="Retry one registration already in the datastore")
    p_one.add_argument("registration_id")
    p_one.set_defaults(func=_cmd_sync_one)

    p_watch = sub.add_parser("watch", help="Run the auto-sync scheduler until interrupted")
    p_watch.add_argument("--agent-id", default=None)
    p_watch.set_defaults(func=_cmd_watch)

    return parser


def main(argv: Sequence[str] | None = None) -> int:
    load_dotenv()

    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = load_settings()
    except RuntimeError as exc:
        raise SystemExit(str(exc)) from exc

    configure_logging(level=settings.log_level, log_format=settings.log_format, environment=settings.app_env)
    runtime = build_runtime(settings)
    return int(args.func(runtime, args))


if __name__ == "__main__":
    raise SystemExit(main())
