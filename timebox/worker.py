"""
Temporal Worker for timebox.

The worker polls the Temporal server for workflow and activity tasks and
runs them. Each variant has its own task queue, so you can run one worker
per variant (and scale them separately) or all of them in one process:

    python -m timebox.worker                    # every variant
    python -m timebox.worker --variant auction  # auctions only
    python -m timebox.worker --prometheus-address 0.0.0.0:9464

Payloads are encrypted with the same converter the client uses (see
encryption.py). A worker and a client with different keys can't read each
other's data.

Environment variables:
    TEMPORAL_HOST               Temporal server address (default: localhost:7233)
    TEMPORAL_NAMESPACE          Namespace (default: default)
    TIMEBOX_ENCRYPTION_KEYS     Comma-separated Fernet keys, newest first
    TIMEBOX_LOG_LEVEL           Logging level (default: INFO)
    TIMEBOX_PROMETHEUS_ADDRESS  host:port to serve Prometheus /metrics on (default: off)
"""

import argparse
import asyncio
import concurrent.futures
import logging

from temporalio.client import Client
from temporalio.runtime import PrometheusConfig, Runtime, TelemetryConfig
from temporalio.worker import Worker

from .activities import deliver_notification, run_metrics_emitter, run_pulsing_worker
from .encryption import build_data_converter
from .shared import (
    AUCTION,
    DMS,
    HEART,
    LOG_LEVEL,
    METRICS,
    POLL,
    PROMETHEUS_ADDRESS,
    TASK_QUEUES,
    TEMPORAL_HOST,
    TEMPORAL_NAMESPACE,
    VARIANTS,
)
from .workflows import (
    AuctionWorkflow,
    DeadManSwitchWorkflow,
    HeartbeatWorkflow,
    MetricsWorkflow,
    PollWorkflow,
)

logger = logging.getLogger("timebox.worker")

# variant -> (workflows, activities)
REGISTRY = {
    AUCTION: ([AuctionWorkflow], [deliver_notification]),
    POLL: ([PollWorkflow], [deliver_notification]),
    DMS: ([DeadManSwitchWorkflow], [deliver_notification]),
    HEART: ([HeartbeatWorkflow], [run_pulsing_worker]),
    METRICS: ([MetricsWorkflow], [run_metrics_emitter]),
}


def build_worker(
    client: Client,
    variant: str,
    executor: concurrent.futures.Executor,
    task_queue: str | None = None,
) -> Worker:
    """
    Worker for one variant.

    deliver_notification is a sync activity (it uses `requests`), so the
    worker needs a thread pool to run it on. Variants in the same process
    share one pool.
    """
    workflows, activities = REGISTRY[variant]
    return Worker(
        client,
        task_queue=task_queue or TASK_QUEUES[variant],
        workflows=workflows,
        activities=activities,
        activity_executor=executor,
    )


def build_runtime(prometheus_address: str | None) -> Runtime | None:
    """
    Runtime that exports SDK and activity metrics to Prometheus.

    None without an address, so the client uses the default runtime and no
    port is bound.
    """
    if not prometheus_address:
        return None
    return Runtime(
        telemetry=TelemetryConfig(
            metrics=PrometheusConfig(bind_address=prometheus_address)
        )
    )


async def main():
    parser = argparse.ArgumentParser(description="Run timebox Temporal workers")
    parser.add_argument(
        "--variant",
        choices=[*VARIANTS, "all"],
        default="all",
        help="Which variant to serve (default: all)",
    )
    parser.add_argument(
        "--prometheus-address",
        default=PROMETHEUS_ADDRESS,
        help="host:port for a Prometheus /metrics endpoint (default: none)",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=LOG_LEVEL,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    client = await Client.connect(
        TEMPORAL_HOST,
        namespace=TEMPORAL_NAMESPACE,
        data_converter=build_data_converter(),
        runtime=build_runtime(args.prometheus_address),
    )
    if args.prometheus_address:
        logger.info(f"Serving Prometheus metrics on http://{args.prometheus_address}/metrics")

    variants = list(VARIANTS) if args.variant == "all" else [args.variant]

    with concurrent.futures.ThreadPoolExecutor(max_workers=20) as executor:
        workers = [build_worker(client, variant, executor) for variant in variants]
        for variant in variants:
            logger.info(f"Serving '{variant}' on task queue '{TASK_QUEUES[variant]}'")
        logger.info(f"Connected to {TEMPORAL_HOST} (namespace: {TEMPORAL_NAMESPACE})")
        await asyncio.gather(*(worker.run() for worker in workers))


if __name__ == "__main__":
    asyncio.run(main())
