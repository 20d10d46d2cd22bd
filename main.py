#!/usr/bin/env python3
"""
RoleTemplate cascade reconciler.

Keeps RoleTemplateBindings re-synced when their RoleTemplate changes and removes mirrored
ClusterRoles from downstream clusters when a RoleTemplate is deleted.
"""

import argparse
import json
import logging
import sys
from typing import Any, Dict

# Configure logging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s", stream=sys.stderr
)

#
# NOTE: Keep package imports lazy (inside functions) so `--help` works without the
# kubernetes / nats clients installed.
#


def run_one_shot(payload: Any) -> Dict[str, Any]:
    """
    Handle a single lifecycle event in-process (no JetStream).

    create/updated replay the binding list into a fresh index first; enqueue signals are
    collected in memory and returned instead of published.
    """
    from rbac_cascade.api.worker import build_lifecycle, handle_event, load_event
    from rbac_cascade.config import load_config
    from rbac_cascade.feed.binding_watch import BindingFeed
    from rbac_cascade.index.reverse_index import ReverseIndex
    from rbac_cascade.providers.k8s_provider import get_management_api_client
    from rbac_cascade.queue.base import InMemoryBindingQueue

    event = load_event(payload)
    cfg = load_config()
    index = ReverseIndex()
    queue = InMemoryBindingQueue()
    if event.kind != "remove":
        BindingFeed.from_api_client(index, get_management_api_client(cfg.kubeconfig)).replay()

    lifecycle = build_lifecycle(cfg, index=index, scheduler=queue)
    handle_event(event, lifecycle)
    return {
        "ok": True,
        "kind": event.kind,
        "template": event.template.name,
        "enqueued": [str(k) for k in queue.drain()],
    }


def main():
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Cascade RoleTemplate changes to bindings and downstream clusters",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Run the JetStream worker (binding feed + lifecycle events)
  python main.py --run-worker

  # Remove a RoleTemplate's ClusterRole from every downstream cluster
  python main.py --remove project-member

  # Re-enqueue every binding that references a RoleTemplate
  python main.py --enqueue project-member

  # Handle one lifecycle event from JSON (stdin by default)
  echo '{"kind": "updated", "template": {"name": "project-member"}}' | python main.py --run-event
        """,
    )
    parser.add_argument("--run-worker", action="store_true", help="Run the JetStream worker loop")
    parser.add_argument("--run-event", action="store_true", help="Handle a single lifecycle event from JSON")
    parser.add_argument("--event-file", help="Path to a JSON lifecycle event (used with --run-event). Defaults to stdin.")
    parser.add_argument("--remove", metavar="TEMPLATE", help="Run the remove cascade for a RoleTemplate")
    parser.add_argument("--enqueue", metavar="TEMPLATE", help="Re-enqueue bindings referencing a RoleTemplate")

    args = parser.parse_args()

    try:
        if args.run_worker:
            import asyncio

            from rbac_cascade.api.worker_jetstream import run_worker_forever

            asyncio.run(run_worker_forever())
            return

        if args.run_event:
            if args.event_file:
                with open(args.event_file, "r", encoding="utf-8") as f:
                    payload = f.read()
            else:
                payload = sys.stdin.read()
            print(json.dumps(run_one_shot(payload), indent=2))
            return

        if args.remove:
            print(json.dumps(run_one_shot({"kind": "remove", "template": {"name": args.remove}}), indent=2))
            return

        if args.enqueue:
            print(json.dumps(run_one_shot({"kind": "updated", "template": {"name": args.enqueue}}), indent=2))
            return

        parser.print_help()

    except Exception as e:
        from rbac_cascade.core.errors import AggregateError

        if isinstance(e, AggregateError):
            print(
                json.dumps({"ok": False, "error": str(e), "failed_clusters": e.cluster_names}, indent=2),
                file=sys.stderr,
            )
            sys.exit(1)
        print(f"Error: {e}", file=sys.stderr)
        raise


if __name__ == "__main__":
    main()
