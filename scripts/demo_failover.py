"""Rehearse a mixer slot failover with the dry-run backend.

The script builds a small show graph (two test-pattern sources feeding slot 0
of a mixer, the mixer feeding a fake sink), cues the sources, breaks the
primary and prints the graph before and after the re-route.

Examples
--------
Run the default rehearsal::

    python scripts/demo_failover.py

Leave the backup stopped so the controller has to activate it::

    python scripts/demo_failover.py --cold-backup

Break the primary with no usable backup to see the slot degrade::

    python scripts/demo_failover.py --no-backup
"""

from __future__ import annotations

import argparse
import json
import logging
import time
from datetime import timedelta
from typing import Iterable

from cuemix import EngineConfig
from cuemix.events import GraphEvent, utcnow
from cuemix.orchestrator import Orchestrator
from cuemix.runtime.adapter import DryRunPipelineAdapter
from cuemix.utils.logging import configure_logging

LOG = logging.getLogger("demo_failover")


def parse_args(argv: Iterable[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="cuemix dry-run failover rehearsal")
    parser.add_argument("--cold-backup", action="store_true", help="do not pre-roll the backup source")
    parser.add_argument("--no-backup", action="store_true", help="bind the slot without any backup")
    parser.add_argument("--settle", type=float, default=0.5, help="seconds to wait for the worker threads")
    parser.add_argument("--log-level", default="INFO", help="log level for the rehearsal")
    return parser.parse_args(argv)


def build_show(orchestrator: Orchestrator, *, with_backup: bool) -> None:
    orchestrator.create_node("source", {"uri": "test://smpte"}, id="camera-a")
    orchestrator.create_node("source", {"uri": "test://ball"}, id="camera-b")
    orchestrator.create_node("mixer", {"width": 1280, "height": 720, "slots": 2}, id="program")
    orchestrator.create_node("destination", {"type": "fake", "sync": False}, id="monitor")

    orchestrator.connect("camera-a", "program", 0, {"video::alpha": 1.0})
    orchestrator.connect("program", "monitor")
    orchestrator.bind_failover("program", 0, "camera-a", ["camera-b"] if with_backup else [])


def print_event(event: GraphEvent) -> None:
    print(f"event {json.dumps(event.to_dict(), default=str)}")


def main(argv: Iterable[str] | None = None) -> int:
    args = parse_args(argv)
    configure_logging(args.log_level)

    adapter = DryRunPipelineAdapter()
    config = EngineConfig(profile="rehearsal", backend="dry-run", tick_interval=0.05, grace_period=1.0)
    orchestrator = Orchestrator(adapter, config=config)
    orchestrator.events.subscribe(print_event)
    orchestrator.start()

    try:
        build_show(orchestrator, with_backup=not args.no_backup)
        cue = utcnow() + timedelta(seconds=0.1)
        for node in ("program", "monitor", "camera-a"):
            orchestrator.schedule(node, cue)
        if not args.cold_backup and not args.no_backup:
            orchestrator.schedule("camera-b", cue)
        time.sleep(args.settle)

        print(json.dumps(orchestrator.inspect().to_dict(), indent=2, default=str))

        LOG.info("Breaking camera-a")
        adapter.fail(orchestrator.graph.node("camera-a").handle, reason="camera unplugged")
        time.sleep(args.settle)

        print(json.dumps(orchestrator.inspect().to_dict(), indent=2, default=str))
    finally:
        orchestrator.stop()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
