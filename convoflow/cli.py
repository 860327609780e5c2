"""ConvoFlow command line — validate, draw, simulate and inspect flows.

    convoflow validate flows/welcome.yaml
    convoflow graph flows/welcome.yaml > welcome.mmd
    convoflow chat flows/welcome.yaml --subject 5511999990000 --var nome=Ana
    convoflow list --db convoflow.db --status WAITING_INPUT
    convoflow show 3f9a1b2c... --db convoflow.db

``chat`` prints outbound messages and reads inbound ones from stdin.  Lines
starting with ``/`` are commands: ``/timeout`` expires the pending wait,
``/cancel`` cancels the execution, ``/vars`` prints the variables and
``/quit`` leaves.
"""

from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path

import click
import yaml

from convoflow.capabilities import OutboxSender, StaticKnowledgeBase
from convoflow.config import EngineConfig
from convoflow.db import MemoryExecutionStore, SQLiteExecutionStore
from convoflow.errors import FlowEngineError
from convoflow.execution import ExecutionStatus
from convoflow.graph import load_flow_file
from convoflow.logging import disable_logging, get_logger, setup_logging
from convoflow.runner import Runner
from convoflow.visualize import build_mermaid

_log = get_logger("cli")

_STATUSES = [s.value for s in ExecutionStatus]


def _load(flow_file: str):
    try:
        return load_flow_file(flow_file)
    except (FlowEngineError, ValueError, yaml.YAMLError) as exc:
        raise click.ClickException(f"{flow_file}: {exc}") from exc


def _parse_vars(pairs: tuple[str, ...]) -> dict[str, str]:
    out = {}
    for pair in pairs:
        if "=" not in pair:
            raise click.BadParameter(f"expected NAME=VALUE, got '{pair}'", param_hint="--var")
        name, value = pair.split("=", 1)
        out[name.strip()] = value
    return out


def _open_store(db: str | None):
    return SQLiteExecutionStore(db) if db else MemoryExecutionStore()


@click.group()
@click.option("--log-level", default=None,
              type=click.Choice(["debug", "info", "warning", "error"]),
              help="Log level (default: CONVOFLOW_LOG_LEVEL or info)")
@click.option("--log-dir", default=None, type=click.Path(file_okay=False),
              help="Directory for log files (default: ./logs)")
@click.option("--no-log", is_flag=True, help="Do not write a log file")
@click.option("-v", "--verbose", is_flag=True, help="Also log to the console")
@click.pass_context
def main(ctx, log_level, log_dir, no_log, verbose):
    """ConvoFlow — conversational flow engine."""
    config = EngineConfig.from_env()
    ctx.obj = config
    if no_log:
        disable_logging()
        return
    log_file = setup_logging(
        ctx.invoked_subcommand or "convoflow",
        log_level=log_level or config.log_level,
        log_dir=log_dir,
        console=verbose,
    )
    _log.debug("Logging to %s", log_file)


@main.command()
@click.argument("flow_file", type=click.Path(exists=True, dir_okay=False))
def validate(flow_file):
    """Check FLOW_FILE and report its size."""
    graph = _load(flow_file)
    click.echo(f"OK  flow '{graph.id}'  nodes={len(graph.nodes)}  edges={len(graph.edges)}")


@main.command()
@click.argument("flow_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--direction", default="TD", type=click.Choice(["TD", "LR", "BT", "RL"]))
@click.option("--no-details", is_flag=True, help="Only node ids and types in labels")
def graph(flow_file, direction, no_details):
    """Print FLOW_FILE as a Mermaid flowchart."""
    click.echo(build_mermaid(_load(flow_file), direction=direction, details=not no_details))


@main.command()
@click.argument("flow_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--subject", default="5500000000000", show_default=True,
              help="Subject key (contact) to run the flow for")
@click.option("--var", "variables", multiple=True, metavar="NAME=VALUE",
              help="Initial variable; repeatable")
@click.option("--db", default=None, type=click.Path(dir_okay=False),
              help="SQLite file to persist executions (default: in memory)")
@click.option("--knowledge", default=None, type=click.Path(exists=True, dir_okay=False),
              help="Text file of knowledge snippets separated by blank lines")
@click.option("--llm", is_flag=True, help="Answer aiKnowledge nodes with a hosted LLM")
@click.pass_obj
def chat(config, flow_file, subject, variables, db, knowledge, llm):
    """Simulate a conversation with FLOW_FILE in the console."""
    flow = _load(flow_file)
    sender = OutboxSender(echo=lambda text: click.echo(f"bot> {text}"))

    kb = None
    if knowledge:
        chunks = [c.strip() for c in Path(knowledge).read_text(encoding="utf-8").split("\n\n")]
        kb = StaticKnowledgeBase([c for c in chunks if c])

    generator = None
    if llm:
        from convoflow.llm import LLMGenerator
        generator = LLMGenerator()

    with Runner(
        _open_store(db or config.db_path),
        sender,
        generator=generator,
        knowledge=kb,
        flows=[flow],
        config=config,
    ) as runner:
        try:
            execution_id = runner.start_execution(flow.id, subject, _parse_vars(variables))
        except FlowEngineError as exc:
            raise click.ClickException(str(exc)) from exc
        _converse(runner, execution_id, subject)


def _converse(runner: Runner, execution_id: str, subject: str) -> None:
    click.echo(f"[execution {execution_id}]")
    stdin = click.get_text_stream("stdin")
    while True:
        view = runner.get_execution(execution_id)
        status = view["status"]
        if ExecutionStatus(status).is_terminal:
            break
        click.echo(f"[{status} at '{view['current_node_id']}']")
        line = stdin.readline()
        if not line:
            break
        line = line.rstrip("\n")
        if line == "/quit":
            break
        if line == "/cancel":
            runner.cancel(execution_id)
        elif line == "/timeout":
            deadline = view["wait_deadline"]
            if deadline is None:
                click.echo("[no pending wait]")
            else:
                runner.expire_waits(now=datetime.fromisoformat(deadline))
        elif line == "/vars":
            click.echo(json.dumps(view["variables"], ensure_ascii=False, indent=2))
        else:
            runner.on_inbound_message(subject, line)

    view = runner.get_execution(execution_id)
    suffix = f"  error={view['error']}" if view["error"] else ""
    click.echo(f"[execution {execution_id} {view['status']}{suffix}]")


@main.command()
@click.argument("execution_id")
@click.option("--db", required=True, type=click.Path(exists=True, dir_okay=False))
@click.option("--json", "as_json", is_flag=True, help="Print the raw record as JSON")
def show(execution_id, db, as_json):
    """Print an execution's status, variables and log."""
    try:
        execution = SQLiteExecutionStore(db).get(execution_id)
    except FlowEngineError as exc:
        raise click.ClickException(str(exc)) from exc

    if as_json:
        click.echo(json.dumps(execution.to_dict(), ensure_ascii=False, indent=2))
        return

    click.echo(f"id       : {execution.id}")
    click.echo(f"flow     : {execution.flow_id}@v{execution.flow_version}")
    click.echo(f"subject  : {execution.subject_key}")
    click.echo(f"status   : {execution.status.value}")
    if execution.current_node_id:
        click.echo(f"node     : {execution.current_node_id}")
    if execution.wait_deadline:
        click.echo(f"deadline : {execution.wait_deadline.isoformat()}")
    if execution.error:
        click.echo(f"error    : {execution.error}")
    click.echo("variables:")
    for name, value in execution.variables.items():
        click.echo(f"  {name} = {value!r}")
    click.echo("log:")
    for entry in execution.log:
        payload = json.dumps(entry.payload, ensure_ascii=False) if entry.payload else ""
        click.echo(f"  {entry.timestamp}  {entry.event.value:<10}  {entry.node_id}  {payload}")


@main.command(name="list")
@click.option("--db", required=True, type=click.Path(exists=True, dir_okay=False))
@click.option("--status", default=None, type=click.Choice(_STATUSES))
@click.option("--limit", default=50, show_default=True)
def list_executions(db, status, limit):
    """List executions, most recently updated first."""
    executions = SQLiteExecutionStore(db).list(
        ExecutionStatus(status) if status else None, limit=limit
    )
    if not executions:
        click.echo("No executions.")
        return
    for e in executions:
        click.echo(f"{e.id}  {e.status.value:<13}  {e.flow_id:<20}  {e.subject_key:<16}  "
                   f"{e.updated_at.isoformat()}")


if __name__ == "__main__":
    main()
