import json
import logging

import click

from .backend import Identity, LocalLedger
from .config import DB_FILE, LEDGER_DB_FILE, LOG_LEVEL, config_int
from .credentials import CredentialStore
from .db import init_db, connect_db
from .errors import LedgerQError
from .models import STATES, INIT_LEDGER
from .repository import (
    enqueue_job, get_job, list_jobs, counts, reap_expired, get_config, set_config,
)
from .worker import WorkerPool, start_workers

LOG_FORMAT = "%(asctime)s %(levelname)-7s [%(threadName)s] %(name)s: %(message)s"


def setup_logging(level: str):
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)


@click.group(help="ledgerq: ledger gateway with an asynchronous submission queue")
@click.option("--db", "db_path", envvar="LEDGERQ_DB", default=DB_FILE, show_default=True,
              help="Job store database file")
@click.option("--log-level", envvar="LEDGERQ_LOG_LEVEL", default=LOG_LEVEL, show_default=True,
              type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False))
@click.pass_context
def cli(ctx, db_path, log_level):
    setup_logging(log_level)
    # Ensure DB/schema exist before any command runs
    init_db(db_path)
    ctx.obj = {"db_path": db_path}


ledger_option = click.option(
    "--ledger", "ledger_path", envvar="LEDGERQ_LEDGER_DB", default=LEDGER_DB_FILE,
    show_default=True, help="Bundled ledger database file",
)


# ---------- Serve ----------
@cli.command("serve", help="Run the HTTP gateway together with a worker pool")
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", default=8000, type=int, show_default=True)
@click.option("--workers", "count", default=2, type=int, show_default=True,
              help="Number of submission workers")
@click.option("--init-ledger", is_flag=True, help="Seed the ledger with sample records first")
@ledger_option
@click.pass_obj
def serve_cmd(obj, host, port, count, init_ledger, ledger_path):
    import uvicorn

    from .api import create_app

    backend = LocalLedger(ledger_path)
    if init_ledger:
        backend.submit(Identity("admin", "local"), INIT_LEDGER)
    credentials = CredentialStore(obj["db_path"])
    app = create_app(backend, db_path=obj["db_path"], credentials=credentials)
    server = uvicorn.Server(uvicorn.Config(app, host=host, port=port, log_config=None))

    def _shutdown(exc):
        # the gateway goes down with the pool
        server.should_exit = True

    pool = WorkerPool(backend, count=count, db_path=obj["db_path"], credentials=credentials,
                      on_fatal=_shutdown)
    pool.start()
    try:
        server.run()
    finally:
        pool.stop()
        pool.join()
        backend.close()
    if pool.fatal is not None:
        raise SystemExit(1)


# ---------- Enqueue ----------
@cli.command("enqueue", help="Queue a ledger transaction directly, bypassing the HTTP gateway")
@click.option("--principal", required=True, help="Principal to submit as")
@click.option("--op", "operation", required=True, help="Transaction name, e.g. CreateMessage")
@click.option("--key", "record_key", default=None, help="Ordering key (defaults to first arg)")
@click.option("--max-attempts", default=None, type=int, help="Override max attempts")
@click.argument("args", nargs=-1)
@click.pass_obj
def enqueue_cmd(obj, principal, operation, record_key, max_attempts, args):
    conn = connect_db(obj["db_path"])
    try:
        job_id = enqueue_job(
            conn,
            principal=principal,
            operation=operation,
            arguments=args,
            record_key=record_key,
            max_attempts=max_attempts,
        )
        click.secho(f"Enqueued {job_id} -> {operation}{list(args)} as {principal}", fg="green")
    except (ValueError, RuntimeError) as e:
        click.secho(f"Error: {e}", fg="red")
        raise SystemExit(1)
    finally:
        conn.close()


# ---------- Workers ----------
@cli.group("worker", help="Manage workers")
def worker_group():
    pass


@worker_group.command("start")
@click.option("--count", type=int, default=1, show_default=True, help="Number of worker threads")
@ledger_option
@click.pass_obj
def worker_start(obj, count, ledger_path):
    click.secho(f"Starting {count} worker(s). Press Ctrl+C to stop…", fg="cyan")
    backend = LocalLedger(ledger_path)
    try:
        ok = start_workers(backend, count, db_path=obj["db_path"])
    finally:
        backend.close()
    if not ok:
        click.secho("Workers stopped: job store unavailable.", fg="red")
        raise SystemExit(1)
    click.secho("Workers stopped.", fg="yellow")


# ---------- Jobs ----------
@cli.command("list")
@click.option("--state", type=click.Choice(STATES), default=None)
@click.option("--principal", default=None)
@click.pass_obj
def list_cmd(obj, state, principal):
    conn = connect_db(obj["db_path"])
    try:
        jobs = list_jobs(conn, state=state, principal=principal)
    finally:
        conn.close()

    if not jobs:
        click.echo("No jobs.")
        return

    for j in jobs:
        click.echo(
            f"{j.id} | {j.state:<9} | attempts={j.attempts}/{j.max_attempts} "
            f"| next={j.next_run_at} | {j.principal}: {j.operation}{j.arguments} "
            f"| last_error={j.last_error}"
        )


@cli.command("show", help="Show one job's status as JSON")
@click.argument("job_id")
@click.pass_obj
def show_cmd(obj, job_id):
    conn = connect_db(obj["db_path"])
    try:
        job = get_job(conn, job_id)
    finally:
        conn.close()
    if job is None:
        click.secho(f"Error: job {job_id} not found.", fg="red")
        raise SystemExit(1)
    status = job.to_status()
    status["principal"] = job.principal
    status["arguments"] = job.arguments
    click.echo(json.dumps(status, indent=2))


@cli.command("status")
@click.pass_obj
def status_cmd(obj):
    conn = connect_db(obj["db_path"])
    try:
        click.echo(json.dumps(counts(conn), indent=2))
    finally:
        conn.close()


@cli.command("reap", help="Delete finished jobs older than job_ttl_seconds")
@click.pass_obj
def reap_cmd(obj):
    conn = connect_db(obj["db_path"])
    try:
        n = reap_expired(conn, config_int(get_config(conn), "job_ttl_seconds"))
    finally:
        conn.close()
    click.secho(f"Reaped {n} job(s).", fg="green")


# ---------- Config ----------
@cli.group("config", help="Configuration")
def config_group():
    pass


@config_group.command("get")
@click.pass_obj
def config_get(obj):
    conn = connect_db(obj["db_path"])
    try:
        click.echo(json.dumps(get_config(conn), indent=2))
    finally:
        conn.close()


@config_group.command("set")
@click.argument("key")
@click.argument("value")
@click.pass_obj
def config_set_cmd(obj, key, value):
    conn = connect_db(obj["db_path"])
    try:
        set_config(conn, key, value)
        click.secho(f"Config updated: {key}={value}", fg="green")
    except ValueError as e:
        click.secho(f"Error: {e}", fg="red")
        raise SystemExit(1)
    finally:
        conn.close()


# ---------- Credentials ----------
@cli.group("keys", help="Caller API keys")
def keys_group():
    pass


@keys_group.command("issue")
@click.argument("principal")
@click.pass_obj
def keys_issue(obj, principal):
    try:
        api_key = CredentialStore(obj["db_path"]).issue_api_key(principal)
    except ValueError as e:
        click.secho(f"Error: {e}", fg="red")
        raise SystemExit(1)
    click.echo(api_key)


@keys_group.command("revoke", help="Revoke every API key of a principal")
@click.argument("principal")
@click.pass_obj
def keys_revoke(obj, principal):
    n = CredentialStore(obj["db_path"]).revoke(principal)
    click.secho(f"Revoked {n} key(s) for {principal}.", fg="green" if n else "yellow")


@cli.group("identities", help="Backend identities used to sign submissions")
def identities_group():
    pass


@identities_group.command("add")
@click.argument("principal")
@click.option("--msp-id", required=True, help="Organization the identity belongs to")
@click.option("--credential", default="", help="Opaque credential passed to the backend")
@click.pass_obj
def identities_add(obj, principal, msp_id, credential):
    try:
        CredentialStore(obj["db_path"]).put_identity(principal, msp_id, credential)
    except (ValueError, RuntimeError) as e:
        click.secho(f"Error: {e}", fg="red")
        raise SystemExit(1)
    click.secho(f"Identity stored for {principal} ({msp_id}).", fg="green")


# ---------- Ledger ----------
@cli.group("ledger", help="Bundled ledger")
def ledger_group():
    pass


@ledger_group.command("init", help="Seed the bundled ledger with sample records")
@ledger_option
def ledger_init(ledger_path):
    backend = LocalLedger(ledger_path)
    try:
        backend.submit(Identity("admin", "local"), INIT_LEDGER)
    except LedgerQError as e:
        click.secho(f"Error: {e}", fg="red")
        raise SystemExit(1)
    finally:
        backend.close()
    click.secho(f"Ledger {ledger_path} initialized.", fg="green")


def main():
    cli()
