"""Unit tests for main entry point."""

import os
from unittest.mock import MagicMock, patch

import fakeredis
import pytest

from config import EngineConfig
from main import build_dispatcher, build_registry, create_app, create_engine, get_redis_client, main
from models.definition import TaskType
from services.remote_executor import RemoteExecutor
from services.workflow_engine import WorkflowEngine


class TestGetRedisClient:
    """Tests for get_redis_client."""

    def test_uses_given_url(self):
        with patch("main.redis.Redis") as mock_redis:
            get_redis_client("redis://custom:1234")
            mock_redis.from_url.assert_called_once_with(
                "redis://custom:1234", decode_responses=True
            )


class TestBuilders:
    """Tests for registry, dispatcher and engine construction."""

    def test_registry_has_remote_executor_per_type(self):
        config = EngineConfig(remote_executors={TaskType.SYNC: "http://sync:8080"})
        registry = build_registry(config)
        assert registry.registered_types() == frozenset({TaskType.SYNC})
        assert isinstance(registry.get(TaskType.SYNC), RemoteExecutor)

    def test_dispatcher_sinks(self):
        config = EngineConfig(webhook_urls=["http://a/hook", "http://b/hook"])
        dispatcher = build_dispatcher(config)
        assert len(dispatcher._sinks) == 3

    def test_create_engine_uses_redis(self):
        fake = fakeredis.FakeRedis(decode_responses=True)
        config = EngineConfig(worker_pool_size=3, queue_capacity=50)
        with patch("main.get_redis_client", return_value=fake) as mock_client:
            engine = create_engine(config)
        mock_client.assert_called_once_with(config.redis_url)
        assert isinstance(engine, WorkflowEngine)
        assert engine.get_pool_size() == 3


class TestCreateApp:
    """Tests for create_app."""

    def test_creates_fastapi_app(self):
        with patch("main.WorkflowAPI") as mock_api:
            mock_app = MagicMock()
            mock_api.return_value.create_app.return_value = mock_app
            engine = MagicMock()

            assert create_app(engine) == mock_app
            mock_api.assert_called_once_with(engine)


class TestMain:
    """Tests for main function."""

    def run_main(self, argv, env=None):
        engine = MagicMock()
        with patch.dict(os.environ, env or {}, clear=True), \
                patch("sys.argv", ["workflow-engine"] + argv), \
                patch("main.configure_logging") as mock_logging, \
                patch("main.create_engine", return_value=engine) as mock_create, \
                patch("main.create_app") as mock_app, \
                patch("main.uvicorn.run") as mock_run:
            result = main()
        return result, engine, mock_create, mock_app, mock_run, mock_logging

    def test_defaults(self):
        result, engine, mock_create, _, mock_run, mock_logging = self.run_main([])

        assert result == 0
        config = mock_create.call_args.args[0]
        assert config.port == 8000
        engine.start.assert_called_once_with(recover=True)
        engine.stop.assert_called_once()
        mock_run.assert_called_once()
        assert mock_run.call_args.kwargs["port"] == 8000
        mock_logging.assert_called_once_with(log_dir="logs", log_file="engine.log", level="info")

    def test_arguments_override_environment(self):
        _, engine, mock_create, _, mock_run, _ = self.run_main(
            ["--port", "9000", "--workers", "6", "--log-level", "debug", "--no-recover"],
            env={"PORT": "7000", "WORKER_POOL_SIZE": "2"},
        )
        config = mock_create.call_args.args[0]
        assert config.port == 9000
        assert config.worker_pool_size == 6
        assert config.log_level == "debug"
        engine.start.assert_called_once_with(recover=False)
        assert mock_run.call_args.kwargs["host"] == "0.0.0.0"

    def test_environment_used_when_no_arguments(self):
        _, _, mock_create, _, _, _ = self.run_main([], env={"PORT": "7000"})
        assert mock_create.call_args.args[0].port == 7000

    def test_engine_stopped_when_server_fails(self):
        engine = MagicMock()
        with patch.dict(os.environ, {}, clear=True), \
                patch("sys.argv", ["workflow-engine"]), \
                patch("main.configure_logging"), \
                patch("main.create_engine", return_value=engine), \
                patch("main.create_app"), \
                patch("main.uvicorn.run", side_effect=RuntimeError("bind failed")):
            with pytest.raises(RuntimeError, match="bind failed"):
                main()
        engine.stop.assert_called_once()
