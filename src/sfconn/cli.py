from __future__ import annotations

import json
import logging
from typing import Any, Optional, Tuple

import click
from tqdm import tqdm

from . import __version__
from .client import ApiClient
from .config import SFConfig
from .env_loader import load_env_files
from .exceptions import MissingCredentialsError, MissingSessionError, SalesforceApiError
from .logging_config import configure_logging
from .oauth import build_authorize_url

_logger = logging.getLogger(__name__)

# Failures a command reports as a one-line message instead of a traceback
_CALL_ERRORS = (SalesforceApiError, MissingSessionError, MissingCredentialsError)

# Load .env very early, so everything else sees env vars
load_env_files()


def _client(ctx: click.Context) -> ApiClient:
    cfg = SFConfig.from_env()
    host = ctx.obj.get("host") if ctx.obj else None
    if host:
        cfg.instance_host = host
    return ApiClient(cfg)


def _fail(e: Exception) -> click.ClickException:
    kind = getattr(e, "kind", type(e).__name__)
    return click.ClickException(f"{kind}: {e}")


def _echo_json(data: Any, pretty: bool) -> None:
    click.echo(json.dumps(data, indent=2 if pretty else None, default=str))


pretty_option = click.option("--pretty", is_flag=True, help="Pretty-print JSON.")


@click.group(
    context_settings={"help_option_names": ["-h", "--help"]},
    invoke_without_command=True,
)
@click.version_option(__version__, "--version", prog_name="sfconn")
@click.option(
    "-v",
    "--verbose",
    "loglevel",
    flag_value=logging.INFO,
    default=None,
    help="Enable INFO logs.",
)
@click.option(
    "-vv",
    "--very-verbose",
    "loglevel",
    flag_value=logging.DEBUG,
    help="Enable DEBUG logs.",
)
@click.option("--host", default=None, help="Salesforce host (overrides SF_INSTANCE_HOST).")
@click.pass_context
def cli(ctx: click.Context, loglevel: Optional[int], host: Optional[str]) -> None:
    """sfconn CLI. Query and call a Salesforce org from the terminal."""
    configure_logging(loglevel)
    ctx.ensure_object(dict)
    ctx.obj["host"] = host
    _logger.debug("CLI start, version=%s", __version__)
    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


@cli.command("login")
@click.option(
    "--redirect-url",
    default=None,
    help="URL (or #fragment) the OAuth flow redirected to.",
)
@click.pass_context
def cmd_login(ctx: click.Context, redirect_url: Optional[str]) -> None:
    """Resolve a session and remember its token."""
    with _client(ctx) as client:
        try:
            credential = client.connect(redirect_fragment=redirect_url)
        except (SalesforceApiError, MissingCredentialsError) as e:
            raise _fail(e) from None
        if credential is None:
            raise click.ClickException(
                "No session found. Run 'sfconn authorize-url' and log in first."
            )
        token = credential.token
        click.echo(f"✅  Session for {credential.host_scope} (from {credential.source}).")
        click.echo(f"Token preview: {token[:10]}...{token[-6:]}")


@cli.command("logout")
@click.pass_context
def cmd_logout(ctx: click.Context) -> None:
    """Forget the session and its stored token."""
    with _client(ctx) as client:
        client.logout()
        click.echo(f"Logged out of {client.host or '<no host>'}.")


@cli.command("authorize-url")
@click.pass_context
def cmd_authorize_url(ctx: click.Context) -> None:
    """Print the URL that starts the OAuth user-agent flow."""
    cfg = SFConfig.from_env()
    host = (ctx.obj or {}).get("host") or cfg.instance_host or cfg.login_url
    if not cfg.client_id:
        raise _fail(MissingCredentialsError(["SF_CLIENT_ID"]))
    click.echo(build_authorize_url(host, cfg.client_id, cfg.redirect_uri))


@cli.command("query")
@click.argument("soql")
@click.option("--tooling", is_flag=True, help="Use the Tooling API.")
@click.option("--all", "include_deleted", is_flag=True, help="Include deleted/archived rows.")
@click.option("--all-pages", is_flag=True, help="Follow nextRecordsUrl and return every row.")
@pretty_option
@click.pass_context
def cmd_query(
    ctx: click.Context,
    soql: str,
    tooling: bool,
    include_deleted: bool,
    all_pages: bool,
    pretty: bool,
) -> None:
    """Run a SOQL query."""
    with _client(ctx) as client:
        try:
            if all_pages:
                rows = client.query_all_iter(
                    soql, use_tooling=tooling, include_deleted=include_deleted
                )
                records = list(tqdm(rows, desc="Records", unit="rec", disable=None))
                res: Any = {"totalSize": len(records), "done": True, "records": records}
            else:
                res = client.query(soql, use_tooling=tooling, include_deleted=include_deleted)
        except _CALL_ERRORS as e:
            raise _fail(e) from None
    _echo_json(res, pretty)


@cli.command("search")
@click.argument("sosl")
@pretty_option
@click.pass_context
def cmd_search(ctx: click.Context, sosl: str, pretty: bool) -> None:
    """Run a SOSL search."""
    with _client(ctx) as client:
        try:
            res = client.search(sosl)
        except _CALL_ERRORS as e:
            raise _fail(e) from None
    _echo_json(res, pretty)


@cli.command("describe")
@click.argument("object_name")
@pretty_option
@click.pass_context
def cmd_describe(ctx: click.Context, object_name: str, pretty: bool) -> None:
    """Describe one sObject."""
    with _client(ctx) as client:
        try:
            res = client.describe(object_name)
        except _CALL_ERRORS as e:
            raise _fail(e) from None
    _echo_json(res, pretty)


@cli.command("objects")
@click.option("--queryable", is_flag=True, help="Only list objects that can be queried.")
@click.pass_context
def cmd_objects(ctx: click.Context, queryable: bool) -> None:
    """List sObject API names."""
    with _client(ctx) as client:
        try:
            res = client.list_objects()
        except _CALL_ERRORS as e:
            raise _fail(e) from None
    for sobj in res.get("sobjects", []):
        if queryable and not sobj.get("queryable"):
            continue
        click.echo(sobj.get("name"))


@cli.command("org")
@click.option("--refresh", is_flag=True, help="Query the org instead of using the cache.")
@pretty_option
@click.pass_context
def cmd_org(ctx: click.Context, refresh: bool, pretty: bool) -> None:
    """Show sandbox / instance / trial information for the org."""
    with _client(ctx) as client:
        client.cfg.fetch_org_info = False
        try:
            client.connect()
        except (SalesforceApiError, MissingCredentialsError) as e:
            raise _fail(e) from None
        info = None if refresh else client.org_info()
        if info is None:
            info = client.refresh_org_info()
    if info is None:
        raise click.ClickException("Organization info is not available.")
    _echo_json(
        {
            "isSandbox": info.is_sandbox,
            "instanceName": info.instance_name,
            "trialExpirationDate": info.trial_expiration_date,
        },
        pretty,
    )


def _parse_args(pairs: Tuple[str, ...]) -> dict:
    args: dict = {}
    for pair in pairs:
        if "=" not in pair:
            raise click.BadParameter(f"expected key=value, got {pair!r}", param_hint="--arg")
        key, value = pair.split("=", 1)
        # Repeating a key builds a list, matching repeated XML elements
        if key in args:
            existing = args[key]
            args[key] = existing + [value] if isinstance(existing, list) else [existing, value]
        else:
            args[key] = value
    return args


@cli.command("soap")
@click.argument("service")
@click.argument("method")
@click.option("--arg", "pairs", multiple=True, help="Argument as key=value (repeatable).")
@pretty_option
@click.pass_context
def cmd_soap(
    ctx: click.Context, service: str, method: str, pairs: Tuple[str, ...], pretty: bool
) -> None:
    """Invoke METHOD on a SOAP SERVICE (Enterprise, Partner, Apex, Metadata, Tooling)."""
    args = _parse_args(pairs)
    with _client(ctx) as client:
        try:
            res = client.invoke(service, method, args)
        except _CALL_ERRORS as e:
            raise _fail(e) from None
        except ValueError as e:
            raise click.BadParameter(str(e), param_hint="SERVICE") from None
    _echo_json(res, pretty)
