import json
import logging
import threading
from dataclasses import asdict

import click

from .config import BLOB_DIR, DB_FILE
from .db import connect_db
from .engines import FileBlobStore, load_engines, passthrough_engines
from .errors import MaskctlError
from .models import MODES, STATUSES, TIER_PRIORITY_SCORE, STANDARD
from .repository import get_config, set_config
from .service import Orchestrator
from .utils import parse_point
from .worker import setup_signal_handlers

logger = logging.getLogger(__name__)


class _Ctx:
    def __init__(self, db_path, blob_dir):
        self.db_path = db_path
        self.blob_dir = blob_dir
        self._db = None

    @property
    def db(self):
        if self._db is None:
            self._db = connect_db(self.db_path)
        return self._db

    def orchestrator(self, engines=None) -> Orchestrator:
        return Orchestrator(self.db, engines=engines)

    def close(self):
        if self._db is not None:
            self._db.close()


@click.group(help="maskctl: video masking job orchestrator")
@click.option("--db", "db_path", default=DB_FILE, show_default=True, envvar="MASKCTL_DB",
              help="SQLite database file")
@click.option("--blobs", "blob_dir", default=BLOB_DIR, show_default=True, envvar="MASKCTL_BLOBS",
              help="Directory backing the file blob store")
@click.option("--log-level", default="WARNING", show_default=True,
              type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False))
@click.pass_context
def cli(ctx, db_path, blob_dir, log_level):
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    ctx.obj = _Ctx(db_path, blob_dir)
    ctx.call_on_close(ctx.obj.close)


def _fail(e):
    click.secho(f"Error: {e}", fg="red")
    raise SystemExit(1)


# ---------- Submit ----------
@cli.command("submit", help="Submit a new masking job")
@click.option("--owner", "owner_id", required=True, help="Owner id")
@click.option("--tier", type=click.Choice(sorted(TIER_PRIORITY_SCORE)), default=STANDARD, show_default=True)
@click.option("--mode", type=click.Choice(MODES), required=True, help="Region treatment")
@click.option("--input", "input_ref", required=True, help="Blob key of the source video")
@click.option("--point", required=True, help="Segmentation point as X,Y")
@click.option("--batch-size", default=None, type=int, help="Override the processing batch size")
@click.pass_obj
def submit_cmd(obj, owner_id, tier, mode, input_ref, point, batch_size):
    try:
        params = {"batch_size": batch_size} if batch_size is not None else {}
        job_id = obj.orchestrator().submit(owner_id, tier, mode, input_ref, parse_point(point), params=params)
    except (ValueError, MaskctlError) as e:
        _fail(e)
    click.secho(f"Submitted {job_id} (tier={tier}, mode={mode}, input={input_ref})", fg="green")


# ---------- Jobs ----------
@cli.command("status", help="Show one job's status")
@click.argument("job_id")
@click.pass_obj
def status_cmd(obj, job_id):
    try:
        view = obj.orchestrator().get_status(job_id)
    except MaskctlError as e:
        _fail(e)
    click.echo(json.dumps(asdict(view), indent=2))


@cli.command("cancel", help="Cancel a job")
@click.argument("job_id")
@click.pass_obj
def cancel_cmd(obj, job_id):
    try:
        cancelled = obj.orchestrator().cancel(job_id)
    except MaskctlError as e:
        _fail(e)
    if cancelled:
        click.secho(f"Cancelled {job_id}.", fg="yellow")
    else:
        click.echo(f"Job {job_id} had already finished.")


@cli.command("list")
@click.option("--status", type=click.Choice(STATUSES), default=None)
@click.pass_obj
def list_cmd(obj, status):
    jobs = obj.orchestrator().list_jobs(status)
    if not jobs:
        click.echo("No jobs.")
        return

    for j in jobs:
        click.echo(
            f"{j.id:>32} | {j.status:<8} | {j.stage:<8} | {j.progress_percent:>3}% "
            f"| tier={j.tier} | mode={j.mode} | attempts={j.attempt()} | error={j.error_detail}"
        )


@cli.command("stats")
@click.pass_obj
def stats_cmd(obj):
    click.echo(json.dumps(obj.orchestrator().stats(), indent=2))


# ---------- DLQ ----------
@cli.group("dlq", help="Dead Letter Queue")
def dlq_group():
    pass


@dlq_group.command("list")
@click.pass_obj
def dlq_list_cmd(obj):
    entries = obj.orchestrator().dead_letters()
    if not entries:
        click.echo("DLQ is empty.")
        return

    for e in entries:
        click.echo(f"{e.job_id} | deliveries={e.delivery_count} | last_error={e.last_error}")


@dlq_group.command("retry")
@click.argument("job_id")
@click.pass_obj
def dlq_retry_cmd(obj, job_id):
    try:
        new_id = obj.orchestrator().retry_dead_letter(job_id)
    except (ValueError, MaskctlError) as e:
        _fail(e)
    click.secho(f"Resubmitted DLQ job {job_id} as {new_id}.", fg="green")


# ---------- Config ----------
@cli.group("config", help="Configuration")
def config_group():
    pass


@config_group.command("get")
@click.pass_obj
def config_get(obj):
    click.echo(json.dumps(get_config(obj.db), indent=2))


@config_group.command("set")
@click.argument("key")
@click.argument("value")
@click.pass_obj
def config_set_cmd(obj, key, value):
    try:
        set_config(obj.db, key, value)
    except ValueError as e:
        _fail(e)
    click.secho(f"Config updated: {key}={value}", fg="green")


# ---------- Blobs ----------
@cli.group("blob", help="File blob store")
def blob_group():
    pass


@blob_group.command("put")
@click.argument("key")
@click.argument("source", type=click.File("rb"))
@click.pass_obj
def blob_put_cmd(obj, key, source):
    try:
        FileBlobStore(obj.blob_dir).put(key, source.read())
    except ValueError as e:
        _fail(e)
    click.secho(f"Stored {key}", fg="green")


# ---------- Pool ----------
@cli.group("pool", help="Run the worker pool")
def pool_group():
    pass


@pool_group.command("start")
@click.option("--workers", type=int, default=None, help="Initial worker count (default: min_workers)")
@click.option("--engines", "engines_target", default=None,
              help="Engines factory as module:function; defaults to passthrough engines")
@click.pass_obj
def pool_start(obj, workers, engines_target):
    try:
        engines = (load_engines(engines_target, obj.blob_dir) if engines_target
                   else passthrough_engines(obj.blob_dir))
    except (ImportError, AttributeError, TypeError, ValueError) as e:
        _fail(e)

    orch = obj.orchestrator(engines)
    pool, controller = orch.build_pool()
    stop = threading.Event()

    def _on_signal(signum):
        stop.set()

    setup_signal_handlers(_on_signal)
    count = workers if workers is not None else orch.settings.min_workers
    click.secho(f"Starting {count} worker(s). Press Ctrl+C to stop…", fg="cyan")
    pool.launch(count)
    control = threading.Thread(target=controller.run, args=(stop,), name="pool-controller", daemon=True)
    control.start()

    try:
        while not stop.is_set():
            stop.wait(0.5)
    finally:
        controller.shutdown(stop, control)
        click.secho("Workers stopped.", fg="yellow")


def main():
    cli()
