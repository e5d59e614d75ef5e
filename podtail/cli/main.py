"""``podtail`` command: tail logs from every container matching a query."""

from __future__ import annotations

import asyncio
import dataclasses

import click

from podtail.app import main
from podtail.config import (
    compile_pattern,
    compile_patterns,
    load_config,
    parse_duration,
    validate_container_state,
    validate_template,
)
from podtail.models.config import PodtailConfig
from podtail.models.targets import ContainerState


def _validated(fn):  # type: ignore[no-untyped-def]
    """Adapt a config validator into a click callback."""

    def callback(ctx: click.Context, param: click.Parameter, value):  # type: ignore[no-untyped-def]
        if value is None or value == ():
            return None
        try:
            return fn(value)
        except ValueError as exc:
            raise click.BadParameter(str(exc)) from exc

    return callback


@click.command(context_settings={"help_option_names": ["-h", "--help"]})
@click.argument("pod_query", required=False, callback=_validated(compile_pattern))
@click.option("-c", "--container", callback=_validated(compile_pattern), help="Container name regex.")
@click.option(
    "-E", "--exclude-container", callback=_validated(compile_pattern), help="Container name regex to exclude."
)
@click.option("-n", "--namespace", default=None, help="Kubernetes namespace (default: from kubeconfig).")
@click.option("-A", "--all-namespaces", is_flag=True, default=False, help="Tail pods in every namespace.")
@click.option("-l", "--selector", default=None, help="Label selector, e.g. app=web.")
@click.option(
    "--init-containers",
    type=bool,
    default=None,
    help="Include init containers (true/false).",
)
@click.option(
    "--container-state",
    type=click.Choice([s.value for s in ContainerState], case_sensitive=False),
    default=None,
    help="Only tail containers in this state.",
)
@click.option("-t", "--timestamps", is_flag=True, default=False, help="Prefix lines with timestamps.")
@click.option("-s", "--since", callback=_validated(parse_duration), help="Only logs newer than this, e.g. 5s, 2m, 3h.")
@click.option("--tail", "tail_lines", type=int, default=None, help="Lines of history per container; -1 for all.")
@click.option("--template", callback=_validated(validate_template), help="Output template (str.format fields).")
@click.option(
    "-i",
    "--include",
    multiple=True,
    callback=_validated(compile_patterns),
    help="Only show lines matching this regex (repeatable).",
)
@click.option(
    "-e",
    "--exclude",
    multiple=True,
    callback=_validated(compile_patterns),
    help="Hide lines matching this regex (repeatable).",
)
@click.option("--kubeconfig", default=None, help="Path to kubeconfig file.")
@click.option("--context", default=None, help="Kubeconfig context to use.")
@click.option(
    "--log-level",
    type=click.Choice(["debug", "info", "warning", "error"], case_sensitive=False),
    default=None,
    help="Diagnostic log level (stderr).",
)
@click.option("--metrics-port", type=click.IntRange(0, 65535), default=None, help="Serve Prometheus metrics.")
def cli(**options: object) -> None:
    """Tail the logs of every pod container matching POD_QUERY.

    Pods are discovered continuously: containers that start are tailed, and
    containers whose pods go away are dropped.
    """
    try:
        config = load_config()
    except ValueError as exc:
        raise click.UsageError(f"invalid PODTAIL_* environment: {exc}") from exc
    config = apply_options(config, options)
    asyncio.run(main(config))


def apply_options(config: PodtailConfig, options: dict[str, object]) -> PodtailConfig:
    """Overlay CLI flags that were given onto the environment config."""

    def given(name: str) -> bool:
        # unset flags arrive as False; they never turn an env setting off
        value = options.get(name)
        return value is not None and value is not False

    cluster = dataclasses.replace(
        config.cluster,
        **{
            field: options[flag]
            for flag, field in (
                ("namespace", "namespace"),
                ("all_namespaces", "all_namespaces"),
                ("kubeconfig", "kubeconfig"),
                ("context", "context"),
            )
            if given(flag)
        },
    )

    query_updates: dict[str, object] = {}
    if given("pod_query"):
        query_updates["pod_query"] = options["pod_query"]
    if given("container"):
        query_updates["container_query"] = options["container"]
    if given("exclude_container"):
        query_updates["exclude_container_query"] = options["exclude_container"]
    if given("selector"):
        query_updates["label_selector"] = options["selector"]
    if options.get("init_containers") is not None:
        query_updates["init_containers"] = options["init_containers"]
    if given("container_state"):
        query_updates["container_state"] = validate_container_state(str(options["container_state"]))
    query = dataclasses.replace(config.query, **query_updates)

    output_updates: dict[str, object] = {}
    for flag, field in (
        ("timestamps", "timestamps"),
        ("since", "since_seconds"),
        ("tail_lines", "tail_lines"),
        ("template", "template"),
        ("include", "include"),
        ("exclude", "exclude"),
    ):
        if given(flag):
            output_updates[field] = options[flag]
    output = dataclasses.replace(config.output, **output_updates)

    metrics = config.metrics
    if given("metrics_port"):
        metrics = dataclasses.replace(metrics, port=options["metrics_port"])
    log = config.log
    if given("log_level"):
        log = dataclasses.replace(log, level=str(options["log_level"]).lower())

    return dataclasses.replace(config, cluster=cluster, query=query, output=output, metrics=metrics, log=log)
