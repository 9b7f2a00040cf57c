"""CLI main entry point."""

import json
import os
import subprocess
import sys
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

import click

from ...adapters import (
    LocalStorageAdapter,
    LoggingMetricsAdapter,
    NoopMetricsAdapter,
    S3StorageAdapter,
    StdLoggerAdapter,
    UtcClockAdapter,
)
from ...client_operations.stats import get_scope_stats, list_cache_items
from ...core.arbitrary import ArbitraryFileCache
from ...core.archive import CompressionMethod
from ...core.config import BuildCacheConfig
from ...core.errors import BuildCacheError, CacheSaveError
from ...core.eviction import EvictionPolicy
from ...core.hashing import hash_files
from ...core.locks import JOB_LOCKS
from ...core.manager import CacheManager
from ...core.models import DEFAULT_FILTER, RestoreKeySet, StorageScope
from ...core.object_path import ObjectPath
from ...core.repository import ObjectRepository
from ...core.session import CacheSession
from ...ports import ClockPort, LoggerPort, MetricsPort, StoragePort


def create_storage(config: BuildCacheConfig) -> StoragePort:
    """Create the object store adapter selected by ``config.backend``."""
    if config.backend == "local":
        return LocalStorageAdapter(config.local_root)
    return S3StorageAdapter(
        endpoint_url=config.endpoint_url,
        region=config.region,
        profile=config.profile,
        max_retries=config.max_retries,
    )


def create_metrics(config: BuildCacheConfig, logger: LoggerPort) -> MetricsPort:
    if config.metrics_type == "logging":
        return LoggingMetricsAdapter(logger)
    return NoopMetricsAdapter()


@dataclass
class AppContext:
    """Wired adapters shared by all commands. Storage is created on first use."""

    config: BuildCacheConfig
    clock: ClockPort
    logger: LoggerPort
    metrics: MetricsPort
    _storage: StoragePort | None = field(default=None, repr=False)

    @property
    def storage(self) -> StoragePort:
        if self._storage is None:
            self.config.validate()
            self._storage = create_storage(self.config)
        return self._storage

    def repository(self) -> ObjectRepository:
        return ObjectRepository(self.storage, self._scope(), self.clock, self.logger)

    def session(self, job: str | None = None) -> CacheSession:
        repository = self.repository()
        eviction = None
        if self.config.max_cache_size_bytes > 0:
            eviction = EvictionPolicy(
                repository, self.config.max_cache_size_bytes, self.logger, self.metrics
            )
        return CacheSession(
            repository,
            self.clock,
            self.logger,
            self.metrics,
            eviction=eviction,
            locks=JOB_LOCKS,
            job=job,
            echo=click.echo,
        )

    def manager(self) -> CacheManager:
        return CacheManager(
            self.storage,
            self.config.bucket,
            self.config.prefix,
            self.clock,
            self.logger,
            self.metrics,
            locks=JOB_LOCKS,
        )

    def object_path(self, name: str) -> ObjectPath:
        return ObjectPath(self.storage, self._scope().child(name), self.clock, self.logger)

    def _scope(self) -> StorageScope:
        return StorageScope(self.config.bucket, self.config.prefix)


def create_context(config: BuildCacheConfig) -> AppContext:
    """Create the command context with wired adapters."""
    logger = StdLoggerAdapter(level=config.log_level)
    return AppContext(
        config=config,
        clock=UtcClockAdapter(),
        logger=logger,
        metrics=create_metrics(config, logger),
    )


def parse_cache_option(value: str, compression: str, validity_file: str | None) -> ArbitraryFileCache:
    """Build a cache from ``PATH[:includes]``."""
    path, _, includes = value.partition(":")
    if not path:
        raise click.BadParameter(f"Missing path in {value!r}", param_hint="--cache")
    return ArbitraryFileCache(
        path,
        includes=includes or None,
        cache_validity_deciding_file=validity_file,
        compression_method=compression,
    )


def job_options(command):
    """Options shared by ``job-restore`` and ``job-save``."""
    options = [
        click.option("--job", required=True, help="Full job name, e.g. folder/project/branch"),
        click.option(
            "--cache",
            "cache_specs",
            multiple=True,
            required=True,
            help="PATH[:includes] relative to the workspace (repeatable)",
        ),
        click.option(
            "--workspace",
            type=click.Path(file_okay=False, path_type=Path),
            default=".",
            help="Directory the cache paths are resolved in",
        ),
        click.option(
            "--compression",
            type=click.Choice([m.name for m in CompressionMethod if m.supported], case_sensitive=False),
            default=CompressionMethod.TARGZ.name,
            show_default=True,
        ),
        click.option(
            "--validity-file",
            help="Comma separated patterns; a cache is outdated once their hash changes",
        ),
        click.option(
            "--default-branch",
            help="Branch whose cache seeds new branches (default: $BC_DEFAULT_BRANCH)",
        ),
    ]
    for option in reversed(options):
        command = option(command)
    return command


def _format_millis(value: int) -> str:
    if not value:
        return "-"
    return datetime.fromtimestamp(value / 1000, tz=UTC).strftime("%Y-%m-%d %H:%M:%S")


@click.group()
@click.option("--debug", is_flag=True, help="Enable debug logging")
@click.option("--bucket", help="Bucket holding the caches (default: $BC_BUCKET)")
@click.option("--prefix", help="Key prefix inside the bucket (default: $BC_PREFIX)")
@click.option(
    "--backend", type=click.Choice(["s3", "local"]), help="Object store backend (default: s3)"
)
@click.option("--endpoint-url", help="Custom S3 endpoint (MinIO, SeaweedFS, ...)")
@click.option("--region", help="AWS region")
@click.option("--profile", help="AWS profile")
@click.pass_context
def cli(
    ctx: click.Context,
    debug: bool,
    bucket: str | None,
    prefix: str | None,
    backend: str | None,
    endpoint_url: str | None,
    region: str | None,
    profile: str | None,
) -> None:
    """buildcache - Remote build cache on S3-compatible object storage."""
    log_level = "DEBUG" if debug else os.environ.get("BC_LOG_LEVEL", "INFO")
    config = BuildCacheConfig.from_env(
        log_level=log_level,
        bucket=bucket,
        prefix=prefix,
        backend=backend,
        endpoint_url=endpoint_url,
        region=region,
        profile=profile,
    )
    if debug:
        config.log_level = "DEBUG"
    ctx.obj = create_context(config)


@cli.command()
@click.argument("path", type=click.Path(path_type=Path))
@click.option("--key", required=True, help="Cache key to restore")
@click.option(
    "--restore-key", "restore_keys", multiple=True, help="Fallback key prefix (repeatable, in order)"
)
@click.pass_obj
def restore(app: AppContext, path: Path, key: str, restore_keys: tuple[str, ...]) -> None:
    """Restore the best matching cache into PATH."""
    try:
        result = app.session().restore(path, RestoreKeySet.of(key, restore_keys))
        result.print_infos(click.echo)
    except Exception as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


@cli.command()
@click.argument("path", type=click.Path(path_type=Path))
@click.option("--key", required=True, help="Cache key to save under")
@click.option("--filter", "filter_", default=DEFAULT_FILTER, show_default=True, help="Ant-style include pattern")
@click.pass_obj
def save(app: AppContext, path: Path, key: str, filter_: str) -> None:
    """Save PATH under KEY unless that key already exists."""
    try:
        result = app.session().save(path, key, filter_)
        result.print_infos(click.echo)
    except Exception as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


@cli.command(context_settings={"ignore_unknown_options": True})
@click.argument("path", type=click.Path(path_type=Path))
@click.argument("command", nargs=-1, required=True, type=click.UNPROCESSED)
@click.option("--key", required=True, help="Cache key")
@click.option(
    "--restore-key", "restore_keys", multiple=True, help="Fallback key prefix (repeatable, in order)"
)
@click.option("--filter", "filter_", default=DEFAULT_FILTER, show_default=True, help="Ant-style include pattern")
@click.option("--job", help="Job name; builds of the same job never restore and save concurrently")
@click.pass_obj
def run(
    app: AppContext,
    path: Path,
    command: tuple[str, ...],
    key: str,
    restore_keys: tuple[str, ...],
    filter_: str,
    job: str | None,
) -> None:
    """Restore PATH, run COMMAND, then save PATH.

    Example: buildcache run --key deps-abc ~/.m2 -- mvn package
    """
    try:
        app.session(job=job).execute(
            path,
            key,
            restore_keys,
            lambda: subprocess.run(list(command), check=True),
            filter=filter_,
        )
    except subprocess.CalledProcessError as e:
        sys.exit(e.returncode)
    except CacheSaveError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(2)
    except (BuildCacheError, OSError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


@cli.command("job-restore")
@job_options
@click.option("--skip-restore", is_flag=True, help="Only report whether an up-to-date cache exists")
@click.pass_obj
def job_restore(
    app: AppContext,
    job: str,
    cache_specs: tuple[str, ...],
    workspace: Path,
    compression: str,
    validity_file: str | None,
    default_branch: str | None,
    skip_restore: bool,
) -> None:
    """Restore the job's caches into the workspace before a build."""
    try:
        caches = [parse_cache_option(entry, compression, validity_file) for entry in cache_specs]
        workspace.mkdir(parents=True, exist_ok=True)
        app.manager().cache(
            job,
            workspace,
            caches,
            default_branch=default_branch or app.config.default_branch,
            skip_restore=skip_restore,
            env=os.environ,
            echo=click.echo,
        )
    except click.BadParameter:
        raise
    except Exception as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


@cli.command("job-save")
@job_options
@click.option(
    "--max-size-mb",
    type=click.IntRange(min=0),
    help="Drop the job cache once the cached paths exceed this size (default: $BC_MAX_CACHE_SIZE_MB)",
)
@click.pass_obj
def job_save(
    app: AppContext,
    job: str,
    cache_specs: tuple[str, ...],
    workspace: Path,
    compression: str,
    validity_file: str | None,
    default_branch: str | None,
    max_size_mb: int | None,
) -> None:
    """Save the job's caches after a build."""
    try:
        caches = [parse_cache_option(entry, compression, validity_file) for entry in cache_specs]
        manager = app.manager()
        decision = manager.save(
            job,
            workspace,
            manager.savers(caches, env=os.environ),
            max_cache_size_mb=app.config.max_cache_size_mb if max_size_mb is None else max_size_mb,
            default_branch=default_branch or app.config.default_branch,
            echo=click.echo,
        )
        if decision.exceeded:
            app.logger.warning("Job cache evicted", job=job, total_size=decision.total_size)
    except click.BadParameter:
        raise
    except Exception as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


def _copy_options(command):
    command = click.option(
        "--no-default-excludes", is_flag=True, help="Also copy VCS and editor files"
    )(command)
    command = click.option("--excludes", help="Comma separated Ant-style exclude patterns")(command)
    command = click.option("--includes", help="Comma separated Ant-style include patterns")(command)
    return command


@cli.command()
@click.argument("source", type=click.Path(exists=True, file_okay=False, path_type=Path))
@click.argument("name")
@_copy_options
@click.pass_obj
def push(
    app: AppContext,
    source: Path,
    name: str,
    includes: str | None,
    excludes: str | None,
    no_default_excludes: bool,
) -> None:
    """Upload the files below SOURCE to NAME, skipping files that are unchanged."""
    try:
        target = app.object_path(name)
        count = target.copy_recursive_from(source, includes, excludes, not no_default_excludes)
        click.echo(json.dumps({"target": str(target), "uploaded": count}, indent=2))
    except Exception as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


@cli.command()
@click.argument("name")
@click.argument("target", type=click.Path(file_okay=False, path_type=Path))
@_copy_options
@click.pass_obj
def pull(
    app: AppContext,
    name: str,
    target: Path,
    includes: str | None,
    excludes: str | None,
    no_default_excludes: bool,
) -> None:
    """Download the files stored under NAME into TARGET."""
    try:
        source = app.object_path(name)
        count = source.copy_recursive_to(target, includes, excludes, not no_default_excludes)
        click.echo(json.dumps({"source": str(source), "downloaded": count}, indent=2))
    except Exception as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


@cli.command("hash-files")
@click.argument("pattern")
@click.option(
    "--workspace",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    default=".",
    help="Directory the pattern is resolved in",
)
def hash_files_command(pattern: str, workspace: Path) -> None:
    """Print the MD5 of all files matching PATTERN, for use in cache keys."""
    click.echo(hash_files(workspace, pattern))


@cli.command()
@click.option("--detailed", is_flag=True, help="Also read access times (one HEAD per object)")
@click.pass_obj
def stats(app: AppContext, detailed: bool) -> None:
    """Show size and usage of the cache scope."""
    try:
        result = get_scope_stats(app.repository(), detailed=detailed)
        click.echo(json.dumps(result.to_dict(), indent=2))
    except Exception as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


@cli.command()
@click.argument("prefix", default="")
@click.option(
    "--sort",
    "sort_by",
    type=click.Choice(["key", "size", "modified", "access"]),
    default="key",
    show_default=True,
)
@click.pass_obj
def ls(app: AppContext, prefix: str, sort_by: str) -> None:
    """List cached keys with size, modification and last access time."""
    try:
        for item in list_cache_items(app.repository(), prefix=prefix, sort_by=sort_by):
            click.echo(
                f"{_format_millis(item.last_modified)}  {_format_millis(item.last_access)}  "
                f"{item.content_length:>12}  {item.key}"
            )
    except Exception as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


@cli.command()
@click.argument("keys", nargs=-1)
@click.option("--all", "purge_all", is_flag=True, help="Delete the whole cache scope")
@click.option("--yes", is_flag=True, help="Do not ask for confirmation")
@click.pass_obj
def purge(app: AppContext, keys: tuple[str, ...], purge_all: bool, yes: bool) -> None:
    """Delete KEYS, or everything with --all."""
    if not keys and not purge_all:
        click.echo("Error: Give keys to delete or --all", err=True)
        sys.exit(1)

    try:
        repository = app.repository()
        if purge_all:
            if not yes:
                click.confirm(f"Delete all caches in {repository.scope}?", abort=True)
            deleted = repository.delete_prefix()
        else:
            deleted = repository.delete(keys)
        click.echo(json.dumps({"scope": str(repository.scope), "deleted": deleted}, indent=2))
    except click.Abort:
        raise
    except Exception as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


@cli.command()
@click.pass_obj
def check(app: AppContext) -> None:
    """Check that the configured bucket is reachable."""
    try:
        reachable = app.repository().bucket_reachable()
        output = {"bucket": app.config.bucket, "backend": app.config.backend, "reachable": reachable}
        click.echo(json.dumps(output, indent=2))
        if not reachable:
            sys.exit(1)
    except Exception as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


def main() -> None:
    """Main entry point."""
    cli()
