#!/usr/bin/env python3
"""
Task graph engine entry point

    python main.py run graph.yaml --mode bounded-parallel --max-parallel 2
    python main.py inspect                      # list sessions
    python main.py inspect <session> [<node>]   # show stored records
"""
import sys

# line-buffered output so progress shows up immediately under nohup
sys.stdout.reconfigure(line_buffering=True)
sys.stderr.reconfigure(line_buffering=True)

# environment must be loaded before the config is read
from dotenv import load_dotenv
load_dotenv()

import argparse
import asyncio
import json
import logging

from agents import CallbackFeedbackChannel, SubprocessAgentBackend, TaskRouter, console_prompt
from errors import GraphValidationError
from services import create_state_store
from startup import EngineConfig, configure_logging
from task_graph import EventStream, GraphCoordinator, ProgressReporter

logger = logging.getLogger("main")


def build_router(config: EngineConfig) -> TaskRouter:
    path = config.agent_profiles_path
    if path and not path.endswith((".yaml", ".yml")):
        return TaskRouter.from_markdown_dir(path, default_agent=config.default_agent)
    return TaskRouter.from_yaml(path, default_agent=config.default_agent)


async def print_progress(events: EventStream, graph) -> None:
    reporter = ProgressReporter()
    async for snapshot in reporter.follow(graph, events):
        done = len(snapshot.completed_nodes) + len(snapshot.failed_nodes)
        running = ", ".join(snapshot.executing_nodes) or "-"
        logger.info(f"progress {done}/{snapshot.total_nodes} ({snapshot.progress:.0%}) running: {running}")


async def run_graph(args, config: EngineConfig) -> int:
    store = create_state_store(config.state_backend, state_dir=config.state_dir, redis_url=config.redis_url)
    coordinator = GraphCoordinator(
        backend=SubprocessAgentBackend(command=config.agent_command, feedback_marker=args.feedback_marker),
        config=config.execution_config(),
        router=build_router(config),
        state_store=store,
        feedback=CallbackFeedbackChannel(console_prompt),
    )

    try:
        graph = coordinator.build_graph(args.graph)
    except (GraphValidationError, OSError, ValueError) as e:
        logger.error(f"Invalid graph {args.graph}: {e}")
        return 2

    events = EventStream()
    watcher = asyncio.create_task(print_progress(events, graph))
    await asyncio.sleep(0)  # let the watcher subscribe before the first event
    try:
        result = await coordinator.run(graph, events=events)
    finally:
        await watcher
        await store.close()

    print(json.dumps(result.to_dict(), ensure_ascii=False, indent=2, default=str))
    return 0 if result.success else 1


async def inspect_state(args, config: EngineConfig) -> int:
    store = create_state_store(config.state_backend, state_dir=config.state_dir, redis_url=config.redis_url)
    try:
        if not args.session:
            output = await store.list_sessions()
        elif not args.node:
            output = {
                "graph": await store.read_graph(args.session),
                "nodes": await store.list_nodes(args.session),
            }
        else:
            output = await store.read_node(args.session, args.node)
    finally:
        await store.close()

    print(json.dumps(output, ensure_ascii=False, indent=2, default=str))
    return 0


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Execute dependency graphs of agent tasks")
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Execute a graph file (JSON or YAML)")
    run.add_argument("graph")
    run.add_argument("--mode", choices=["sequential", "bounded-parallel", "enrichment-aware"])
    run.add_argument("--max-parallel", type=int)
    run.add_argument("--parallelism", choices=["low", "medium", "high"])
    run.add_argument("--task-timeout", type=float)
    run.add_argument("--run-timeout", type=float)
    run.add_argument("--feedback-marker", default=None,
                     help="stdout prefix with which the agent asks for human input")

    inspect = sub.add_parser("inspect", help="Show persisted run state")
    inspect.add_argument("session", nargs="?")
    inspect.add_argument("node", nargs="?")

    for p in (run, inspect):
        p.add_argument("--state-backend", choices=["memory", "file", "redis"])
        p.add_argument("--state-dir")
        p.add_argument("--log-level")

    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)
    config = EngineConfig.from_env(
        mode=getattr(args, "mode", None),
        max_parallel=getattr(args, "max_parallel", None),
        parallelism_level=getattr(args, "parallelism", None),
        task_timeout_seconds=getattr(args, "task_timeout", None),
        run_timeout_seconds=getattr(args, "run_timeout", None),
        state_backend=args.state_backend,
        state_dir=args.state_dir,
        log_level=args.log_level,
    )
    configure_logging(config.log_level)

    if args.command == "run":
        return asyncio.run(run_graph(args, config))
    return asyncio.run(inspect_state(args, config))


if __name__ == "__main__":
    sys.exit(main())
