"""
CLI interface for baton.

Provides maintenance commands around the job store: creating a config,
sweeping abandoned jobs, and inspecting a persisted token. Job calls
themselves are made by the application's own entry points.
"""

import json

import click

from baton import __version__


@click.group()
@click.version_option(version=__version__, prog_name="baton")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.pass_context
def main(ctx, verbose: bool):
    """
    baton - staged jobs driven by a client-held token.
    """
    from baton.config import load_config
    from baton.errors import ConfigError
    from baton.utils import setup_logging

    ctx.ensure_object(dict)
    try:
        config = load_config()
    except ConfigError as e:
        # init must still work when the existing config is broken
        ctx.obj["config_error"] = str(e)
        return

    ctx.obj["config"] = config
    setup_logging(
        log_level="DEBUG" if verbose else config.log_level,
        log_format=config.log_format,
        console_output=verbose,
    )


def _require_config(ctx):
    if "config" not in ctx.obj:
        click.echo(f"✗ Config not loaded: {ctx.obj.get('config_error', 'Unknown error')}", err=True)
        click.echo("Run 'baton init --force' to write a fresh configuration file.", err=True)
        raise SystemExit(1)
    return ctx.obj["config"]


@main.command("init")
@click.option("--force", is_flag=True, help="Overwrite existing configuration")
def init(force: bool):
    """Initialize baton configuration."""
    from baton.config import DEFAULT_CONFIG_YAML, get_baton_home

    home = get_baton_home()
    if not home.exists():
        home.mkdir(parents=True)

    cfg_path = home / "config.yaml"
    if cfg_path.exists() and not force:
        click.echo(f"Config already exists at {cfg_path}. Use --force to overwrite.", err=True)
        raise SystemExit(1)

    cfg_path.write_text(DEFAULT_CONFIG_YAML)
    click.echo(f"Initialized baton config at {cfg_path}")


@main.command("cleanup")
@click.option(
    "--older-than",
    "older_than",
    default=None,
    help="Remove jobs not modified within this duration (e.g. 12h, 3d). Default: config cleanup_age",
)
@click.option("--json", "as_json", is_flag=True, help="Print the report as JSON")
@click.pass_context
def cleanup(ctx, older_than: str, as_json: bool):
    """Remove abandoned jobs and their blobs."""
    from baton.cleanup import run_cleanup
    from baton.errors import BatonError
    from baton.utils import format_duration, parse_duration, print_error, print_success, print_warning

    config = _require_config(ctx)

    age = None
    if older_than is not None:
        try:
            age = parse_duration(older_than)
        except ValueError as e:
            raise click.BadParameter(str(e), param_hint="--older-than")

    try:
        report = run_cleanup(age=age, config=config)
    except BatonError as e:
        click.echo(f"✗ Cleanup failed: {e}", err=True)
        raise SystemExit(1)

    if as_json:
        click.echo(json.dumps(report.to_dict(), indent=2))
    else:
        effective = age if age is not None else config.cleanup_age
        print_success(
            f"Removed {report.count} jobs older than {format_duration(effective.total_seconds())}"
        )
        for job_id in report.removed:
            click.echo(f"  {job_id}")
        if report.errors:
            print_warning(f"{len(report.errors)} jobs could not be removed")
            for job_id, error in report.errors.items():
                print_error(f"  {job_id}: {error}")

    if report.errors:
        raise SystemExit(1)


@main.command("show")
@click.argument("job_id")
@click.pass_context
def show(ctx, job_id: str):
    """Print the persisted token for JOB_ID as JSON."""
    from baton.backend import get_backend
    from baton.errors import BatonError, NotFoundError

    config = _require_config(ctx)

    try:
        token = get_backend(config).load(job_id)
    except NotFoundError:
        click.echo(f"✗ Unknown job: {job_id}", err=True)
        raise SystemExit(1)
    except BatonError as e:
        click.echo(f"✗ Cannot load {job_id}: {e}", err=True)
        raise SystemExit(1)

    click.echo(json.dumps(token.to_dict(), indent=2))


if __name__ == "__main__":
    main()
