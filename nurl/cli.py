"""nurl CLI - terminal API client with collections, variables and chains."""

import contextlib
import functools
import json
import logging
import sys
from datetime import datetime, timedelta

import click
import yaml

from nurl import executor
from nurl.chain import ChainDefinition, ChainRunner, StepState
from nurl.core import (
    Workspace,
    default_home,
    init_workspace,
    load_config,
    resolve_config_path,
)
from nurl.exceptions import NurlError, RequestNotFound
from nurl.filters import format_output
from nurl.variables import interpolate_string, interpolate_structure, parse_var_args, scope_from_workspace

MAX_HISTORY = 50

TOOL_HELP = """\
nurl — terminal API client.

Saved requests live in collections, each with switchable environments.
Placeholders like {{base_url}} are filled from (narrowest first):
-v flags, chain context, the collection's active environment, globals.

\b
BUILT-INS
─────────
  {{$uuid}}  {{$timestamp}}  {{$timestamp_unix}}  {{$random_int}}
  {{$random_string}}  {{$random_email}}  {{$date}}  {{$time}}

\b
EXAMPLES
────────
  nurl init
  nurl send get-posts -c jsonplaceholder
  nurl chain run example-workflow
  nurl vars test "{{base_url}}/posts/{{$random_int}}" -c jsonplaceholder
"""


@click.group(help=TOOL_HELP, context_settings={"max_content_width": 88})
@click.option(
    "--home",
    "home_dir",
    default=None,
    help="Workspace directory. Default: $NURL_HOME or ~/.nurl.",
)
@click.option(
    "-c",
    "--config",
    "config_file",
    default=None,
    help="Config file path. Default: .nurl.yaml in CWD, then <home>/config.yaml.",
)
@click.option("--debug", is_flag=True, default=False, help="Log debug output to stderr.")
@click.pass_context
def main(ctx, home_dir, config_file, debug):
    _setup_logging(debug)
    workspace = Workspace(home_dir or default_home())
    config = load_config(resolve_config_path(config_file, workspace.home))
    ctx.obj = {"workspace": workspace, "config": config}


def _setup_logging(debug):
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


# ── init ─────────────────────────────────────────────────────────────────


@main.command()
@click.pass_obj
def init(obj):
    """Scaffold the workspace with an example collection and chain."""
    workspace = obj["workspace"]
    for path, created in init_workspace(workspace):
        status = "created" if created else "skipped, already exists"
        click.echo(f"  {path.relative_to(workspace.home)} ({status})")
    click.echo(f"\nWorkspace ready at {workspace.home}. Run 'nurl --help' to get started.")


# ── send ─────────────────────────────────────────────────────────────────


@main.command()
@click.argument("name")
@click.option("-c", "--collection", default=None, help="Collection holding the request.")
@click.option("-v", "--var", multiple=True, help="Variable as key=value. Repeatable.")
@click.option("-H", "--header", multiple=True, help="Extra header as 'Name: Value'. Repeatable.")
@click.option("-b", "--body", default=None, help="Override the request body.")
@click.option("--timeout", type=int, default=None, help="Request timeout in seconds.")
@click.option("--verbose", is_flag=True, default=False, help="Include response headers.")
@click.option("--raw", is_flag=True, default=False, help="Output the body only.")
@click.pass_obj
def send(obj, name, collection, var, header, body, timeout, verbose, raw):
    """Send a saved request."""
    workspace, config = obj["workspace"], obj["config"]
    try:
        request = workspace.get_request_by_name(name, collection)
    except RequestNotFound as e:
        raise click.ClickException(str(e)) from e

    scope = scope_from_workspace(workspace, request.collection, None, parse_var_args(var))
    url = interpolate_string(request.url, scope)
    headers = interpolate_structure(
        {**(config.get("default_headers") or {}), **request.headers},
        scope,
    )
    headers.update(_parse_headers(header))
    req_body = interpolate_string(body, scope) if body else interpolate_structure(request.body, scope)
    auth = workspace.credential_store().resolve_auth(interpolate_structure(request.auth, scope))

    result = executor.execute_request(
        method=request.method,
        url=url,
        headers=headers,
        body=req_body,
        auth=auth,
        timeout=_resolve_timeout(timeout, config.get("timeout_seconds")),
    )
    if result.error:
        click.echo(f"ERROR: {result.error}", err=True)
        sys.exit(1)

    click.echo(format_output(result, verbose=verbose, raw=raw))
    _save_to_history(
        workspace,
        config,
        request.method,
        url,
        req_body,
        headers,
        request.name,
        request.collection,
    )


# ── chain ────────────────────────────────────────────────────────────────


@main.group()
def chain():
    """Run request chains."""


def _chain_options(fn):
    fn = click.option(
        "--continue-on-error",
        is_flag=True,
        default=False,
        help="Keep going after a failed step instead of aborting.",
    )(fn)
    fn = click.option("--timeout", type=int, default=None, help="Per-request timeout in seconds.")(fn)
    fn = click.option("-v", "--var", multiple=True, help="Variable as key=value. Repeatable.")(fn)
    fn = click.option("-c", "--collection", default=None, help="Collection for saved requests.")(fn)
    return fn


@chain.command("run")
@click.argument("name")
@_chain_options
@click.pass_obj
def chain_run(obj, name, collection, var, timeout, continue_on_error):
    """Run a saved chain by name or file path."""
    workspace = obj["workspace"]
    try:
        definition = ChainDefinition.from_dict(workspace.load_chain(name))
    except NurlError as e:
        raise click.ClickException(str(e)) from e
    stop_on_error = definition.stop_on_error and not continue_on_error
    _cmd_run_chain(
        obj,
        definition.steps,
        collection or definition.collection,
        var,
        timeout,
        stop_on_error,
    )


@chain.command("exec")
@click.argument("steps")
@_chain_options
@click.pass_obj
def chain_exec(obj, steps, collection, var, timeout, continue_on_error):
    """Run inline steps given as a YAML/JSON list."""
    try:
        data = yaml.safe_load(steps)
    except yaml.YAMLError as e:
        raise click.ClickException(f"Invalid steps: {e}") from e
    if isinstance(data, dict):
        data = data.get("steps")
    if not isinstance(data, list) or not all(isinstance(s, dict) for s in data):
        raise click.ClickException("Steps must be a list of mappings.")
    definition = ChainDefinition.from_dict({"name": "inline", "steps": data})
    _cmd_run_chain(obj, definition.steps, collection, var, timeout, not continue_on_error)


@chain.command("list")
@click.pass_obj
def chain_list(obj):
    """List saved chains."""
    workspace = obj["workspace"]
    names = workspace.list_chains()
    if not names:
        click.echo(f"No chains found in: {workspace.chains_dir}")
        return
    for name in names:
        try:
            data = workspace.load_chain(name)
        except NurlError:
            click.echo(f"  {name} (unreadable)")
            continue
        desc = data.get("description", "")
        count = len(data.get("steps") or [])
        label = f"  {name} — {desc}" if desc else f"  {name}"
        click.echo(f"{label} ({count} steps)")


def _cmd_run_chain(obj, steps, collection, var, timeout, stop_on_error):
    workspace, config = obj["workspace"], obj["config"]
    env_vars = workspace.get_collection_env_vars(collection) if collection else {}
    runner = ChainRunner(
        request_store=workspace.request_store(collection),
        http_executor=functools.partial(
            executor.execute_request,
            timeout=_resolve_timeout(timeout, config.get("timeout_seconds")),
        ),
        credential_store=workspace.credential_store(),
        global_vars=workspace.get_global_vars(),
        # -v values seed the run above the environment, below extracted values
        env_vars={**env_vars, **parse_var_args(var)},
        default_headers=config.get("default_headers"),
    )
    result = runner.run(steps, stop_on_error=stop_on_error)
    _render_chain_result(result)
    if not result.success:
        sys.exit(1)


def _render_chain_result(result):
    for outcome in result.results:
        prefix = f"[{outcome.index}] {outcome.request}"
        if outcome.status is not None:
            line = f"{prefix}  STATUS: {outcome.status} ({int(outcome.time_ms or 0)}ms)"
        else:
            line = prefix
        if outcome.state is not StepState.COMPLETED:
            line += f"  {outcome.state.value.upper()} {outcome.error_kind.value}: {outcome.error}"
        click.echo(line)

    if result.context:
        click.echo("CONTEXT:")
        for key, value in result.context.items():
            click.echo(f"  {key}={_render(value)}")

    aborted = result.aborted_at
    if aborted:
        click.echo(f"CHAIN: FAILED (aborted at step {aborted.index})")
    elif result.any_failed:
        click.echo("CHAIN: OK (with failed steps)")
    else:
        click.echo("CHAIN: OK")


# ── vars ─────────────────────────────────────────────────────────────────


@main.group("vars")
def vars_group():
    """Inspect and edit variables."""


@vars_group.command("test")
@click.argument("template")
@click.option("-c", "--collection", default=None, help="Use this collection's active environment.")
@click.option("-v", "--var", multiple=True, help="Variable as key=value. Repeatable.")
@click.pass_obj
def vars_test(obj, template, collection, var):
    """Print TEMPLATE with placeholders expanded."""
    scope = scope_from_workspace(obj["workspace"], collection, None, parse_var_args(var))
    click.echo(interpolate_string(template, scope))


@vars_group.command("list")
@click.option("-c", "--collection", default=None, help="Also show this collection's environment.")
@click.pass_obj
def vars_list(obj, collection):
    """List global (and environment) variables."""
    workspace = obj["workspace"]
    global_vars = workspace.get_global_vars()
    click.echo("GLOBAL:")
    for key, value in global_vars.items():
        click.echo(f"  {key}={_render(value)}")
    if collection:
        environment = workspace.active_environment(collection) or "(none)"
        click.echo(f"ENVIRONMENT {collection}/{environment}:")
        for key, value in workspace.get_collection_env_vars(collection).items():
            click.echo(f"  {key}={_render(value)}")


@vars_group.command("set")
@click.argument("key")
@click.argument("value")
@click.option("-c", "--collection", default=None, help="Set in the collection's active environment.")
@click.pass_obj
def vars_set(obj, key, value, collection):
    """Set a global variable, or an environment variable with -c."""
    workspace = obj["workspace"]
    try:
        if collection:
            workspace.set_env_var(collection, key, value)
            click.echo(f"Set {key} in {collection}/{workspace.active_environment(collection)}")
        else:
            workspace.set_global_var(key, value)
            click.echo(f"Set global {key}")
    except NurlError as e:
        raise click.ClickException(str(e)) from e


# ── env / collection ─────────────────────────────────────────────────────


@main.group("env")
def env_group():
    """Manage collection environments."""


@env_group.command("list")
@click.option("-c", "--collection", required=True, help="Collection name.")
@click.pass_obj
def env_list(obj, collection):
    """List environments, marking the active one."""
    workspace = obj["workspace"]
    try:
        names = workspace.list_environments(collection)
    except NurlError as e:
        raise click.ClickException(str(e)) from e
    active = workspace.active_environment(collection)
    if not names:
        click.echo(f"No environments in collection '{collection}'.")
        return
    for name in names:
        marker = "*" if name == active else " "
        click.echo(f"{marker} {name}")


@env_group.command("use")
@click.argument("name")
@click.option("-c", "--collection", required=True, help="Collection name.")
@click.pass_obj
def env_use(obj, name, collection):
    """Switch the collection's active environment."""
    try:
        obj["workspace"].use_environment(collection, name)
    except NurlError as e:
        raise click.ClickException(str(e)) from e
    click.echo(f"Active environment for {collection}: {name}")


@main.group("collection")
def collection_group():
    """Inspect collections."""


@collection_group.command("list")
@click.pass_obj
def collection_list(obj):
    """List collections and their requests."""
    workspace = obj["workspace"]
    names = workspace.list_collections()
    if not names:
        click.echo(f"No collections found in: {workspace.collections_dir}")
        click.echo("Run 'nurl init' to create an example collection.")
        return
    for name in names:
        requests = workspace.list_requests(name)
        active = workspace.active_environment(name) or "-"
        click.echo(f"  {name}  (env: {active}, {len(requests)} requests)")
        for req in requests:
            click.echo(f"    {req}")


# ── history ──────────────────────────────────────────────────────────────


@main.command()
@click.option(
    "--replay",
    type=int,
    default=None,
    metavar="INDEX",
    help="Resend entry INDEX. Auth is re-resolved from the saved request.",
)
@click.option("--verbose", is_flag=True, default=False, help="Include response headers.")
@click.pass_obj
def history(obj, replay, verbose):
    """Show recent requests, or replay one."""
    workspace, config = obj["workspace"], obj["config"]
    hist = _load_history(workspace)
    if replay is None:
        _cmd_history(hist)
        return
    if replay < 0 or replay >= len(hist):
        click.echo(f"Invalid index {replay}. Use 'nurl history' to list.", err=True)
        sys.exit(1)
    entry = hist[replay]
    result = executor.execute_request(
        method=entry["method"],
        url=entry["url"],
        headers=entry.get("headers"),
        body=entry.get("body"),
        auth=_replay_auth(workspace, entry),
        timeout=_resolve_timeout(config.get("timeout_seconds")),
    )
    if result.error:
        click.echo(f"ERROR: {result.error}", err=True)
        sys.exit(1)
    click.echo(format_output(result, verbose=verbose))


def _replay_auth(workspace, entry):
    """Auth for a replayed entry, looked up again from its saved request."""
    name = entry.get("request")
    if not name:
        return None
    try:
        request = workspace.get_request_by_name(name, entry.get("collection"))
    except RequestNotFound:
        click.echo(f"WARNING: request '{name}' no longer exists, replaying without auth", err=True)
        return None
    scope = scope_from_workspace(workspace, request.collection)
    return workspace.credential_store().resolve_auth(interpolate_structure(request.auth, scope))


def _cmd_history(hist):
    if not hist:
        click.echo("No request history.")
        return
    click.echo("Request history:\n")
    for i, entry in enumerate(hist):
        ts = entry.get("timestamp", "")
        m = entry.get("method", "?")
        u = entry.get("url", "?")
        req = entry.get("request")
        label = f"[{req}] {u}" if req else u
        click.echo(f"  [{i}] {m:<6} {label}  ({ts})")


# ── Helpers ──────────────────────────────────────────────────────────────


def _parse_headers(header_tuples):
    """Parse -H 'Name: Value' tuples into a dict."""
    headers = {}
    for h in header_tuples:
        if ":" in h:
            k, v = h.split(":", 1)
            headers[k.strip()] = v.strip()
    return headers


def _resolve_timeout(*sources, default=30):
    """Return the first truthy timeout from sources, or default."""
    for t in sources:
        if t:
            return int(t)
    return default


def _render(value):
    if isinstance(value, dict | list):
        return json.dumps(value)
    return str(value)


def _load_history(workspace):
    path = workspace.history_file
    if not path.exists():
        return []
    try:
        data = json.loads(path.read_text())
    except (OSError, json.JSONDecodeError) as e:
        click.echo(f"WARNING: ignoring unreadable history {path}: {e}", err=True)
        return []
    return data if isinstance(data, list) else []


def _prune_history(hist, retention_days):
    if not retention_days:
        return hist
    cutoff = datetime.now() - timedelta(days=int(retention_days))
    kept = []
    for entry in hist:
        try:
            ts = datetime.fromisoformat(entry.get("timestamp", ""))
        except ValueError:
            continue
        if ts >= cutoff:
            kept.append(entry)
    return kept


def _save_to_history(
    workspace,
    config,
    method,
    url,
    body=None,
    headers=None,
    request=None,
    collection=None,
):
    hist = _load_history(workspace)
    entry = {"method": method, "url": url, "timestamp": datetime.now().isoformat()}
    if body:
        entry["body"] = body
    if headers:
        safe = {k: v for k, v in headers.items() if k.lower() != "authorization"}
        if safe:
            entry["headers"] = safe
    if request:
        entry["request"] = request
        if collection:
            entry["collection"] = collection
    hist.insert(0, entry)
    hist = _prune_history(hist, config.get("history_retention_days"))
    path = workspace.history_file
    with contextlib.suppress(OSError):
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(hist[:MAX_HISTORY], indent=2))
