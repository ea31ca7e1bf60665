"""
Command-line interface for the claim bucketing engine.

Provides commands for running the service, initializing the database,
loading bucketing configuration and operating on buckets.
"""

import json
import sys
import threading
from pathlib import Path

import click
import structlog

from claim_bucketing.config import find_config_file, load_config, validate_config
from claim_bucketing.core.errors import ClaimBucketingError
from claim_bucketing.utils.logging import configure_logging


logger = structlog.get_logger()


def _build_service(ctx, memory: bool = False):
    from claim_bucketing.core.service import BucketingService

    config = load_config(ctx.obj.get("config_path"))
    return BucketingService(config, memory=memory)


def _echo_bucket(bucket) -> None:
    click.echo(f"Bucket {bucket.id}")
    click.echo(f"  Status: {bucket.status.value}")
    click.echo(f"  Rule: {bucket.rule_name}")
    click.echo(f"  Payer/Payee: {bucket.payer_id} / {bucket.payee_id}")
    if bucket.bin_number:
        click.echo(f"  BIN/PCN: {bucket.bin_number} / {bucket.pcn_number or '-'}")
    click.echo(f"  Claims: {bucket.claim_count:,}")
    click.echo(f"  Total: {bucket.total_amount:,.2f}")
    if bucket.approved_by:
        click.echo(f"  Approved by: {bucket.approved_by} at {bucket.approved_at}")
    if bucket.last_error_message:
        click.echo(f"  Last error: {bucket.last_error_message}")


def _fail(event: str, e: Exception) -> None:
    # Engine errors are expected operator outcomes; anything else gets a traceback
    if not isinstance(e, ClaimBucketingError):
        logger.exception(event, error=str(e))
    click.echo(f"Error: {e}", err=True)
    sys.exit(1)


@click.group()
@click.option(
    "--config", "-c",
    type=click.Path(exists=True),
    help="Path to configuration file",
)
@click.option(
    "--verbose", "-v",
    is_flag=True,
    help="Enable verbose output",
)
@click.option(
    "--json-logs",
    is_flag=True,
    help="Output logs as JSON",
)
@click.pass_context
def main(ctx, config, verbose, json_logs):
    """Claim bucketing engine."""
    ctx.ensure_object(dict)

    log_level = "DEBUG" if verbose else "INFO"
    configure_logging(level=log_level, json_output=json_logs)

    ctx.obj["config_path"] = config
    ctx.obj["log_level"] = log_level


# ---- Setup ----


@main.command("init-db")
@click.option(
    "--drop-existing",
    is_flag=True,
    help="Drop existing tables before creating",
)
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation")
@click.pass_context
def init_db(ctx, drop_existing, yes):
    """Initialize the database schema."""
    from claim_bucketing.db.initialize import init_database

    config_path = ctx.obj.get("config_path")

    try:
        config = load_config(config_path)

        click.echo(f"Initializing database: {config.database.database}")
        if config.database.url:
            click.echo(f"  URL: {config.database.url}")
        else:
            click.echo(f"  Host: {config.database.host}:{config.database.port}")

        if drop_existing and not yes:
            if not click.confirm("This will drop ALL existing tables. Continue?"):
                click.echo("Aborted.")
                return

        engine = init_database(drop_existing=drop_existing, config=config)
        engine.dispose()

        click.echo("Database initialized successfully.")

    except Exception as e:
        _fail("init_db_failed", e)


@main.command("validate-config")
@click.pass_context
def validate_config_cmd(ctx):
    """Validate the configuration file."""
    config_path = ctx.obj.get("config_path")

    try:
        config = load_config(config_path)
        warnings = validate_config(config)

        source = config_path or find_config_file()
        click.echo(f"Configuration is valid ({source or 'defaults and environment'}).")

        if warnings:
            click.echo("\nWarnings:")
            for warning in warnings:
                click.echo(f"  - {warning}")

    except Exception as e:
        _fail("validate_config_failed", e)


@main.command("load-config")
@click.argument("seed_file", type=click.Path(exists=True, dir_okay=False))
@click.pass_context
def load_config_cmd(ctx, seed_file):
    """Load payers, payees, rules, thresholds and commit criteria from SEED_FILE."""
    from claim_bucketing.config.seed import apply_seed, load_seed

    try:
        service = _build_service(ctx)
        seed = load_seed(seed_file)
        counts = apply_seed(seed, service.config_store)
        service.close()

        click.echo(f"Loaded bucketing configuration from {seed_file}:")
        for section, count in counts.items():
            click.echo(f"  {section}: {count}")

    except Exception as e:
        _fail("load_config_failed", e)


@main.command()
@click.argument("claims_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--table", default="claims", show_default=True, help="Source table name recorded on each event")
@click.pass_context
def ingest(ctx, claims_file, table):
    """
    Append claims from CLAIMS_FILE to the change feed.

    The file holds either a JSON array of claim objects or one JSON object
    per line.
    """
    try:
        text = Path(claims_file).read_text()
        stripped = text.lstrip()
        if stripped.startswith("["):
            claims = json.loads(stripped)
        else:
            claims = [json.loads(line) for line in text.splitlines() if line.strip()]

        service = _build_service(ctx)
        for claim in claims:
            service.feed_source.append_claim(claim, table_name=table)
        service.close()

        click.echo(f"Appended {len(claims)} change events to the feed.")

    except Exception as e:
        _fail("ingest_failed", e)


# ---- Service ----


@main.command()
@click.option("--max-ticks", type=int, default=None, help="Stop after N poll ticks")
@click.pass_context
def run(ctx, max_ticks):
    """Run the feed consumer and threshold monitor until interrupted."""
    stop_event = threading.Event()

    try:
        service = _build_service(ctx)
        warnings = validate_config(service.config)
        for warning in warnings:
            click.echo(f"Warning: {warning}", err=True)

        click.echo(f"Starting claim bucketing service ({service.config.feed.consumer_id})...")
        click.echo(f"  Poll interval: {service.config.feed.poll_interval_seconds}s")
        click.echo(f"  Release backend: {service.config.release.backend}")

        try:
            service.run(stop_event, max_ticks=max_ticks)
        except KeyboardInterrupt:
            stop_event.set()
            click.echo("\nStopping...")
        finally:
            service.close()

    except Exception as e:
        _fail("service_failed", e)


@main.command()
@click.pass_context
def poll(ctx):
    """Drain the change feed once."""
    try:
        service = _build_service(ctx)
        result = service.poll()
        service.close()

        click.echo("=== Poll Complete ===")
        click.echo(f"Fetched: {result.fetched}")
        click.echo(f"Processed: {result.processed}")
        click.echo(f"Duplicates: {result.duplicates}")
        click.echo(f"Skipped: {result.skipped}")
        click.echo(f"Rejected: {result.rejected}")
        click.echo(f"Position: {result.position.version}/{result.position.sequence}")
        if result.interrupted:
            click.echo("Interrupted by a store failure; remaining events are retried on the next poll.")

    except Exception as e:
        _fail("poll_failed", e)


@main.command()
@click.pass_context
def sweep(ctx):
    """Re-evaluate every accumulating bucket once."""
    try:
        service = _build_service(ctx)
        result = service.sweep()
        service.close()

        click.echo("=== Sweep Complete ===")
        click.echo(f"Evaluated: {result.evaluated}")
        click.echo(f"Released: {result.released}")
        click.echo(f"Awaiting approval: {result.awaiting_approval}")
        click.echo(f"Missing configuration: {result.missing_configuration}")
        click.echo(f"Pending approval (total): {result.pending_approval_total}")
        click.echo(f"Stale: {len(result.stale_bucket_ids)}")

    except Exception as e:
        _fail("sweep_failed", e)


@main.command()
@click.pass_context
def status(ctx):
    """Show checkpoint, feed backlog and bucket counts."""
    try:
        service = _build_service(ctx)
        info = service.status()
        service.close()

        click.echo("Checkpoint:")
        click.echo(f"  Consumer: {info['consumer_id']}")
        click.echo(f"  Position: {info['feed_version']}/{info['sequence_number']}")
        click.echo(f"  Events handled: {info['total_processed']:,}")
        click.echo(f"  Last checkpoint: {info['last_checkpoint_at'] or 'never'}")

        click.echo("\nFeed:")
        click.echo(f"  Events: {info['feed']['total']:,}")
        click.echo(f"  Unprocessed: {info['feed']['unprocessed']:,}")

        click.echo("\nBuckets:")
        for bucket_status, count in info["buckets"].items():
            click.echo(f"  {bucket_status}: {count}")

    except Exception as e:
        _fail("status_failed", e)


# ---- Buckets ----


@main.command()
@click.option("--status", "statuses", multiple=True, help="Filter by status (repeatable)")
@click.pass_context
def buckets(ctx, statuses):
    """List buckets."""
    from claim_bucketing.domain import BucketStatus

    try:
        service = _build_service(ctx)
        wanted = [BucketStatus(s.upper()) for s in statuses] or None
        found = service.engine.list_buckets(wanted)
        service.close()

        for bucket in found:
            click.echo(
                f"{bucket.id}  {bucket.status.value:<22} {bucket.rule_name:<20} "
                f"{bucket.payer_id}/{bucket.payee_id}  {bucket.claim_count:>6}  {bucket.total_amount:>14,.2f}"
            )
        click.echo(f"{len(found)} bucket(s)")

    except Exception as e:
        _fail("list_buckets_failed", e)


@main.command()
@click.argument("bucket_id")
@click.pass_context
def evaluate(ctx, bucket_id):
    """Re-evaluate one bucket's thresholds now."""
    try:
        service = _build_service(ctx)
        bucket = service.engine.evaluate_thresholds(bucket_id)
        service.close()
        _echo_bucket(bucket)

    except Exception as e:
        _fail("evaluate_failed", e)


def _actor_options(fn):
    fn = click.option("--role", "roles", multiple=True, help="Role held by the actor (repeatable)")(fn)
    fn = click.option("--comments", "-m", default=None, help="Comments recorded in the approval log")(fn)
    fn = click.option("--actor", "-a", required=True, help="Operator performing the action")(fn)
    return fn


@main.command()
@click.argument("bucket_id")
@_actor_options
@click.option(
    "--schedule",
    type=click.DateTime(formats=["%Y-%m-%d %H:%M", "%Y-%m-%dT%H:%M:%S"]),
    default=None,
    help="Scheduled generation time recorded with the approval",
)
@click.pass_context
def approve(ctx, bucket_id, actor, comments, roles, schedule):
    """Approve a bucket awaiting approval and release it."""
    try:
        service = _build_service(ctx)
        bucket = service.engine.approve(
            bucket_id,
            actor,
            comments,
            roles=roles or None,
            scheduled_generation_time=schedule,
        )
        service.close()
        _echo_bucket(bucket)

    except Exception as e:
        _fail("approve_failed", e)


@main.command()
@click.argument("bucket_id")
@_actor_options
@click.pass_context
def reject(ctx, bucket_id, actor, comments, roles):
    """Reject a bucket awaiting approval."""
    try:
        service = _build_service(ctx)
        bucket = service.engine.reject(bucket_id, actor, comments, roles=roles or None)
        service.close()
        _echo_bucket(bucket)

    except Exception as e:
        _fail("reject_failed", e)


@main.command()
@click.argument("bucket_id")
@_actor_options
@click.pass_context
def override(ctx, bucket_id, actor, comments, roles):
    """Release a bucket immediately, bypassing thresholds and approval."""
    try:
        service = _build_service(ctx)
        bucket = service.engine.override(bucket_id, actor, comments, roles=roles or None)
        service.close()
        _echo_bucket(bucket)

    except Exception as e:
        _fail("override_failed", e)


@main.command()
@click.argument("bucket_id")
@_actor_options
@click.pass_context
def redrive(ctx, bucket_id, actor, comments, roles):
    """Send a failed bucket back to generation."""
    try:
        service = _build_service(ctx)
        bucket = service.engine.redrive(bucket_id, actor, comments, roles=roles or None)
        service.close()
        _echo_bucket(bucket)

    except Exception as e:
        _fail("redrive_failed", e)


@main.command()
@click.argument("bucket_id")
@_actor_options
@click.pass_context
def reset(ctx, bucket_id, actor, comments, roles):
    """Return a failed bucket to accumulating after a mistaken rejection."""
    try:
        service = _build_service(ctx)
        bucket = service.engine.reset(bucket_id, actor, comments, roles=roles or None)
        service.close()
        _echo_bucket(bucket)

    except Exception as e:
        _fail("reset_failed", e)


@main.command()
@click.argument("bucket_id")
@click.pass_context
def complete(ctx, bucket_id):
    """Record that file generation for a bucket succeeded."""
    try:
        service = _build_service(ctx)
        bucket = service.engine.report_generation_success(bucket_id)
        service.close()
        _echo_bucket(bucket)

    except Exception as e:
        _fail("complete_failed", e)


@main.command()
@click.argument("bucket_id")
@click.option("--message", "-m", required=True, help="Generation error message")
@click.pass_context
def fail(ctx, bucket_id, message):
    """Record that file generation for a bucket failed."""
    try:
        service = _build_service(ctx)
        bucket = service.engine.report_generation_failure(bucket_id, message)
        service.close()
        _echo_bucket(bucket)

    except Exception as e:
        _fail("fail_failed", e)


# ---- Replay control ----


@main.command("reset-checkpoint")
@click.option("--feed-version", type=int, default=0, show_default=True)
@click.option("--sequence", type=int, default=0, show_default=True)
@click.pass_context
def reset_checkpoint(ctx, feed_version, sequence):
    """Move the consumer checkpoint; later events are replayed."""
    from claim_bucketing.domain import FeedPosition

    try:
        service = _build_service(ctx)
        checkpoint = service.consumer.reset_checkpoint(FeedPosition(feed_version, sequence))
        service.close()
        click.echo(
            f"Checkpoint for {checkpoint.consumer_id} reset to "
            f"{checkpoint.last_feed_version}/{checkpoint.last_sequence_number}."
        )

    except Exception as e:
        _fail("reset_checkpoint_failed", e)


@main.command("mark-unprocessed")
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation")
@click.pass_context
def mark_unprocessed(ctx, yes):
    """Clear every processed flag and drop all checkpoints (full replay)."""
    try:
        if not yes and not click.confirm("This will replay the whole feed. Continue?"):
            click.echo("Aborted.")
            return

        service = _build_service(ctx)
        reset = service.consumer.mark_all_unprocessed()
        service.close()
        click.echo(f"Marked {reset} events unprocessed; checkpoints dropped.")

    except Exception as e:
        _fail("mark_unprocessed_failed", e)


if __name__ == "__main__":
    main()
