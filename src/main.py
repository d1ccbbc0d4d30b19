"""Main entry point for the workflow engine API server."""

import argparse
import logging
import sys

import redis
import uvicorn
from fastapi import FastAPI

from api.app import WorkflowAPI
from config import EngineConfig
from services.definition_store import DefinitionStore
from services.executors import ExecutorRegistry
from services.graph_validator import GraphValidator
from services.log_service import configure_logging
from services.notifier import EventDispatcher, LoggingSink, WebhookSink
from services.remote_executor import RemoteExecutor
from services.state_store import RedisStateStore
from services.task_queue import PriorityTaskQueue
from services.workflow_engine import WorkflowEngine

logger = logging.getLogger(__name__)


def get_redis_client(redis_url: str) -> redis.Redis:
    """Create Redis client for the given URL."""
    return redis.Redis.from_url(redis_url, decode_responses=True)


def build_registry(config: EngineConfig) -> ExecutorRegistry:
    """Register a remote executor for every configured task type."""
    registry = ExecutorRegistry()
    for task_type, url in config.remote_executors.items():
        registry.register(task_type, RemoteExecutor(url, task_type))
        logger.info(f"Executor for {task_type.value}: {url}")
    if not config.remote_executors:
        logger.warning("No executors configured; every run will fail validation")
    return registry


def build_dispatcher(config: EngineConfig) -> EventDispatcher:
    sinks = [LoggingSink()] + [WebhookSink(url) for url in config.webhook_urls]
    return EventDispatcher(sinks)


def create_engine(config: EngineConfig) -> WorkflowEngine:
    """Create the engine with Redis-backed stores."""
    redis_client = get_redis_client(config.redis_url)
    registry = build_registry(config)
    return WorkflowEngine(
        DefinitionStore(redis_client, GraphValidator(registry)),
        RedisStateStore(redis_client),
        registry,
        task_queue=PriorityTaskQueue(config.queue_capacity),
        dispatcher=build_dispatcher(config),
        pool_size=config.worker_pool_size,
        poll_interval=config.worker_poll_interval,
        wait_seconds=config.coordinator_wait_seconds,
    )


def create_app(engine: WorkflowEngine) -> FastAPI:
    """Create FastAPI application around an engine."""
    return WorkflowAPI(engine).create_app()


def main() -> int:
    """Run the workflow engine API server."""
    config = EngineConfig.from_env()

    parser = argparse.ArgumentParser(description="Workflow Engine API Server")
    parser.add_argument(
        "--host",
        default=config.host,
        help=f"Host to bind to (default: {config.host})",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=config.port,
        help=f"Port to bind to (default: {config.port})",
    )
    parser.add_argument(
        "--log-level",
        choices=["debug", "info", "warning", "error"],
        default=config.log_level,
        help="Log level (default: info)",
    )
    parser.add_argument(
        "--workers",
        type=int,
        default=config.worker_pool_size,
        help=f"Initial worker pool size (default: {config.worker_pool_size})",
    )
    parser.add_argument(
        "--no-recover",
        action="store_true",
        help="Do not resume unfinished runs at start-up",
    )
    args = parser.parse_args()

    config = EngineConfig(
        **{
            **config.model_dump(),
            "host": args.host,
            "port": args.port,
            "log_level": args.log_level,
            "worker_pool_size": args.workers,
            "recover_runs": config.recover_runs and not args.no_recover,
        }
    )

    # Configure logging with file rotation
    configure_logging(log_dir=config.log_dir, log_file="engine.log", level=config.log_level)

    logger.info("Starting workflow engine API server")
    logger.info(f"Redis: {config.redis_url}")

    engine = create_engine(config)
    app = create_app(engine)
    engine.start(recover=config.recover_runs)
    try:
        uvicorn.run(app, host=config.host, port=config.port, log_level=config.log_level)
    finally:
        engine.stop()
    return 0


if __name__ == "__main__":
    sys.exit(main())
