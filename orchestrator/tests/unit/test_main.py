"""Unit tests for main entry point."""

import os
from unittest.mock import MagicMock, patch

from config import OrchestratorSettings
from main import create_app, get_redis_client, main


class TestGetRedisClient:
    """Tests for get_redis_client."""

    def test_uses_default_url(self):
        """Should use default localhost URL."""
        with patch.dict(os.environ, {}, clear=True):
            with patch("main.redis.Redis") as mock_redis:
                get_redis_client()
                mock_redis.from_url.assert_called_once_with(
                    "redis://localhost:6379", decode_responses=True
                )

    def test_uses_environment_url(self):
        """Should use REDIS_URL from environment."""
        with patch.dict(os.environ, {"REDIS_URL": "redis://custom:1234"}):
            with patch("main.redis.Redis") as mock_redis:
                get_redis_client()
                mock_redis.from_url.assert_called_once_with(
                    "redis://custom:1234", decode_responses=True
                )


class TestCreateApp:
    """Tests for create_app."""

    def test_creates_fastapi_app(self):
        """Should wire services into the API."""
        mock_redis = MagicMock()
        settings = OrchestratorSettings()

        with patch("main.get_redis_client", return_value=mock_redis):
            with patch("main.build_services") as mock_build:
                with patch("main.OrchestratorAPI") as mock_api:
                    mock_app = MagicMock()
                    mock_api.return_value.create_app.return_value = mock_app

                    result = create_app(settings)

                    assert result == mock_app
                    mock_build.assert_called_once_with(mock_redis, settings)
                    services = mock_build.return_value
                    mock_api.assert_called_once_with(
                        services.execution_service,
                        services.queue_manager,
                        services.recovery,
                        services.workflow_store,
                        services.state_store,
                        mock_redis,
                    )


class TestMain:
    """Tests for main function."""

    def test_parses_arguments(self):
        """Should parse command line arguments."""
        mock_app = MagicMock()

        with patch("main.create_app", return_value=mock_app):
            with patch("main.configure_logging"):
                with patch("main.uvicorn.run") as mock_uvicorn:
                    with patch("sys.argv", ["main.py", "--host", "127.0.0.1", "--port", "9000"]):
                        result = main()

                        assert result == 0
                        mock_uvicorn.assert_called_once()
                        call_kwargs = mock_uvicorn.call_args
                        assert call_kwargs[1]["host"] == "127.0.0.1"
                        assert call_kwargs[1]["port"] == 9000

    def test_uses_default_values(self):
        """Should use default host, port and log level."""
        with patch.dict(os.environ, {}, clear=True):
            with patch("main.create_app", return_value=MagicMock()):
                with patch("main.configure_logging") as mock_logging:
                    with patch("main.uvicorn.run") as mock_uvicorn:
                        with patch("sys.argv", ["main.py"]):
                            main()

                            call_kwargs = mock_uvicorn.call_args[1]
                            assert call_kwargs["host"] == "0.0.0.0"
                            assert call_kwargs["port"] == 8000
                            assert call_kwargs["log_level"] == "info"
                            assert mock_logging.call_args[1]["log_file"] == "orchestrator.log"

    def test_log_level_from_environment(self):
        """LOG_LEVEL sets the default log level."""
        with patch.dict(os.environ, {"LOG_LEVEL": "DEBUG"}, clear=True):
            with patch("main.create_app", return_value=MagicMock()):
                with patch("main.configure_logging"):
                    with patch("main.uvicorn.run") as mock_uvicorn:
                        with patch("sys.argv", ["main.py"]):
                            main()

                            assert mock_uvicorn.call_args[1]["log_level"] == "debug"
