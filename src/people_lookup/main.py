"""CLI entrypoint for people-lookup."""

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from decimal import Decimal
from pathlib import Path

import rich_click as click

from people_lookup import __version__
from people_lookup.lookup.controllers import (
    AccountCreditCommand,
    AccountShowCommand,
    ConfigSetCommand,
    DbCommand,
    LookupCliController,
    SearchEstimateCommand,
    SearchExportCommand,
    SearchListCommand,
    SearchResultsCommand,
    SearchSubmitCommand,
    TaskRefCommand,
)
from people_lookup.lookup.errors import InsufficientCreditsError, PeopleLookupError
from people_lookup.lookup.models import BillingPolicyName, FilterConfig, SearchMode

click.rich_click.USE_MARKDOWN = True
LOOKUP_CONTROLLER = LookupCliController()


@click.group()
@click.version_option(version=__version__, prog_name="people-lookup")
@click.option("--verbose", is_flag=True, default=False, help="Log engine progress to stderr.")
def people_lookup(verbose: bool) -> None:
    """Batch people lookup CLI."""

    if verbose:
        logging.basicConfig(
            level=logging.INFO,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )


@people_lookup.group()
def account() -> None:
    """Credit account commands."""


@account.command("credit")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--account-id",
    default=None,
    help="Account to credit. Defaults to PEOPLE_LOOKUP_USER_ID.",
)
@click.option(
    "--description",
    default="Credit",
    show_default=True,
    help="Ledger entry description.",
)
@click.argument("amount", type=str)
def account_credit(
    db_path: Path | None,
    account_id: str | None,
    description: str,
    amount: str,
) -> None:
    """Add credits to an account."""

    with _cli_errors():
        _emit_lines(
            LOOKUP_CONTROLLER.account_credit(
                AccountCreditCommand(
                    db_path=db_path,
                    account_id=account_id,
                    amount=_parse_amount(amount),
                    description=description,
                ),
            ),
        )


@account.command("show")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--account-id",
    default=None,
    help="Account to show. Defaults to PEOPLE_LOOKUP_USER_ID.",
)
@click.option(
    "--entries",
    type=click.IntRange(min=0, max=1000),
    default=20,
    show_default=True,
    help="How many latest ledger entries to print.",
)
def account_show(db_path: Path | None, account_id: str | None, entries: int) -> None:
    """Show balances and recent ledger entries."""

    with _cli_errors():
        _emit_lines(
            LOOKUP_CONTROLLER.account_show(
                AccountShowCommand(db_path=db_path, account_id=account_id, entries=entries),
            ),
        )


@people_lookup.group()
def search() -> None:
    """Search task commands."""


@search.command("submit")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--name", "names", multiple=True, required=True, help="Name to search. Repeatable.")
@click.option(
    "--location",
    "locations",
    multiple=True,
    help="Location crossed with every name. Repeatable.",
)
@click.option(
    "--mode",
    type=click.Choice([mode.value for mode in SearchMode]),
    default=None,
    help="Search mode. Defaults to nameLocation when --location is given.",
)
@click.option("--min-age", type=click.IntRange(min=0), default=None, help="Minimum age.")
@click.option("--max-age", type=click.IntRange(min=0), default=None, help="Maximum age.")
@click.option(
    "--min-year",
    "min_report_year",
    type=click.IntRange(min=0),
    default=None,
    help="Minimum report year.",
)
@click.option(
    "--include-deceased",
    is_flag=True,
    default=False,
    help="Keep records marked deceased.",
)
@click.option("--exclude-married", is_flag=True, default=False, help="Drop married records.")
@click.option(
    "--exclude-t-mobile",
    is_flag=True,
    default=False,
    help="Drop records whose carrier is T-Mobile.",
)
@click.option(
    "--exclude-comcast",
    is_flag=True,
    default=False,
    help="Drop records whose carrier is Comcast.",
)
@click.option("--exclude-landline", is_flag=True, default=False, help="Drop landline phones.")
@click.option("--require-phone", is_flag=True, default=False, help="Drop records without phone.")
@click.option(
    "--policy",
    type=click.Choice([policy.value for policy in BillingPolicyName]),
    default=None,
    help="Billing policy. Defaults to the configured policy.",
)
@click.option(
    "--provider-fixture",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    default=None,
    help="JSON fixture served as the lookup provider. Overrides PEOPLE_LOOKUP_PROVIDER_FIXTURE.",
)
def search_submit(  # noqa: PLR0913
    db_path: Path | None,
    names: tuple[str, ...],
    locations: tuple[str, ...],
    mode: str | None,
    min_age: int | None,
    max_age: int | None,
    min_report_year: int | None,
    include_deceased: bool,
    exclude_married: bool,
    exclude_t_mobile: bool,
    exclude_comcast: bool,
    exclude_landline: bool,
    require_phone: bool,
    policy: str | None,
    provider_fixture: Path | None,
) -> None:
    """Submit a batch and wait until it finishes."""

    with _cli_errors():
        filters = FilterConfig(
            exclude_deceased=not include_deceased,
            min_age=min_age,
            max_age=max_age,
            min_report_year=min_report_year,
            exclude_married=exclude_married,
            exclude_t_mobile=exclude_t_mobile,
            exclude_comcast=exclude_comcast,
            exclude_landline=exclude_landline,
            require_phone=require_phone,
        )
        _emit_lines(
            LOOKUP_CONTROLLER.search_submit(
                SearchSubmitCommand(
                    db_path=db_path,
                    names=names,
                    locations=locations,
                    mode=mode,
                    filters=filters,
                    policy=policy,
                    provider_fixture=provider_fixture,
                ),
            ),
        )


@search.command("estimate")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--name", "names", multiple=True, required=True, help="Name to search. Repeatable.")
@click.option("--location", "locations", multiple=True, help="Location. Repeatable.")
@click.option(
    "--mode",
    type=click.Choice([mode.value for mode in SearchMode]),
    default=None,
    help="Search mode. Defaults to nameLocation when --location is given.",
)
def search_estimate(
    db_path: Path | None,
    names: tuple[str, ...],
    locations: tuple[str, ...],
    mode: str | None,
) -> None:
    """Print minimum and maximum cost of a batch without submitting it."""

    with _cli_errors():
        _emit_lines(
            LOOKUP_CONTROLLER.search_estimate(
                SearchEstimateCommand(
                    db_path=db_path,
                    names=names,
                    locations=locations,
                    mode=mode,
                ),
            ),
        )


@search.command("status")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("task_id")
def search_status(db_path: Path | None, task_id: str) -> None:
    """Show counters, billing and log of one task."""

    with _cli_errors():
        _emit_lines(
            LOOKUP_CONTROLLER.search_status(TaskRefCommand(db_path=db_path, task_id=task_id)),
        )


@search.command("results")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--page", type=click.IntRange(min=1), default=1, show_default=True)
@click.option(
    "--page-size",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Records per page.",
)
@click.argument("task_id")
def search_results(db_path: Path | None, page: int, page_size: int, task_id: str) -> None:
    """Page through filtered results of a task."""

    with _cli_errors():
        _emit_lines(
            LOOKUP_CONTROLLER.search_results(
                SearchResultsCommand(
                    db_path=db_path,
                    task_id=task_id,
                    page=page,
                    page_size=page_size,
                ),
            ),
        )


@search.command("cancel")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("task_id")
def search_cancel(db_path: Path | None, task_id: str) -> None:
    """Cancel a pending task or flag a running one."""

    with _cli_errors():
        _emit_lines(
            LOOKUP_CONTROLLER.search_cancel(TaskRefCommand(db_path=db_path, task_id=task_id)),
        )


@search.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--page", type=click.IntRange(min=1), default=1, show_default=True)
@click.option(
    "--page-size",
    type=click.IntRange(min=1, max=200),
    default=20,
    show_default=True,
    help="Tasks per page.",
)
def search_list(db_path: Path | None, page: int, page_size: int) -> None:
    """List tasks of the current user, newest first."""

    with _cli_errors():
        _emit_lines(
            LOOKUP_CONTROLLER.search_list(
                SearchListCommand(db_path=db_path, page=page, page_size=page_size),
            ),
        )


@search.command("export")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--output",
    "output_path",
    type=click.Path(path_type=Path, dir_okay=False),
    required=True,
    help="CSV file to write.",
)
@click.argument("task_id")
def search_export(db_path: Path | None, output_path: Path, task_id: str) -> None:
    """Export filtered results of a task as CSV."""

    with _cli_errors():
        _emit_lines(
            LOOKUP_CONTROLLER.search_export(
                SearchExportCommand(db_path=db_path, task_id=task_id, output_path=output_path),
            ),
        )


@people_lookup.group()
def config() -> None:
    """Runtime configuration overrides."""


@config.command("show")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def config_show(db_path: Path | None) -> None:
    """Print effective configuration."""

    with _cli_errors():
        _emit_lines(LOOKUP_CONTROLLER.config_show(DbCommand(db_path=db_path)))


@config.command("set")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("key")
@click.argument("value")
def config_set(db_path: Path | None, key: str, value: str) -> None:
    """Store a configuration override."""

    with _cli_errors():
        _emit_lines(
            LOOKUP_CONTROLLER.config_set(ConfigSetCommand(db_path=db_path, key=key, value=value)),
        )


@config.command("unset")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("key")
def config_unset(db_path: Path | None, key: str) -> None:
    """Remove a configuration override."""

    with _cli_errors():
        _emit_lines(
            LOOKUP_CONTROLLER.config_set(ConfigSetCommand(db_path=db_path, key=key, value=None)),
        )


@people_lookup.group()
def cache() -> None:
    """Detail cache maintenance."""


@cache.command("stats")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def cache_stats(db_path: Path | None) -> None:
    """Count cached detail records."""

    with _cli_errors():
        _emit_lines(LOOKUP_CONTROLLER.cache_stats(DbCommand(db_path=db_path)))


@cache.command("purge")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def cache_purge(db_path: Path | None) -> None:
    """Delete expired cache entries."""

    with _cli_errors():
        _emit_lines(LOOKUP_CONTROLLER.cache_purge(DbCommand(db_path=db_path)))


def _parse_amount(raw: str) -> Decimal:
    try:
        return Decimal(raw)
    except ArithmeticError as error:
        raise ValueError(f"Invalid amount: {raw!r}") from error


@contextmanager
def _cli_errors() -> Iterator[None]:
    try:
        yield
    except InsufficientCreditsError as error:
        message = str(error)
        if error.task_id:
            message += f" (task {error.task_id})"
        raise click.ClickException(message) from error
    except (PeopleLookupError, ValueError) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    people_lookup()
