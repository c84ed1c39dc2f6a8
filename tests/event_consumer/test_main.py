"""Tests for the command line entry point."""

from unittest.mock import patch

import pytest

from event_consumer.__main__ import (
    DEV_BOOTSTRAP_SERVERS,
    create_broker,
    load_config,
    main,
    parse_args,
)
from event_consumer.broker.kafka import KafkaBrokerClient
from event_consumer.broker.pubsub import PubSubBrokerClient
from event_consumer.common.exceptions import ConfigurationError


@pytest.fixture
def clean_env(monkeypatch):
    for name in (
        "KAFKA_BOOTSTRAP_SERVERS",
        "CONSUMER_WORKER_COUNT",
        "CONSUMER_RATE_LIMIT_PER_SECOND",
        "CONSUMER_TRANSPORT",
        "GCP_PROJECT_ID",
        "PUBSUB_SUBSCRIPTION_ID",
        "GOOGLE_APPLICATION_CREDENTIALS",
    ):
        monkeypatch.setenv(name, "")
        monkeypatch.delenv(name)
    return monkeypatch


class TestParseArgs:
    def test_defaults(self, clean_env):
        args = parse_args([])

        assert args.workers is None
        assert args.metrics_port == 8000
        assert args.log_level == "INFO"
        assert args.dev is False
        assert args.transport == "kafka"

    def test_overrides(self, clean_env):
        args = parse_args(
            ["--workers", "8", "--metrics-port", "9100", "--log-level", "DEBUG", "--dev"]
        )

        assert args.workers == 8
        assert args.metrics_port == 9100
        assert args.log_level == "DEBUG"
        assert args.dev is True

    def test_transport_from_env(self, clean_env):
        clean_env.setenv("CONSUMER_TRANSPORT", "PUBSUB")
        assert parse_args([]).transport == "pubsub"

    def test_transport_flag(self, clean_env):
        assert parse_args(["--transport", "pubsub"]).transport == "pubsub"


class TestLoadConfig:
    def test_dev_defaults_bootstrap_servers(self, clean_env):
        config = load_config(parse_args(["--dev"]))
        assert config.kafka.bootstrap_servers == DEV_BOOTSTRAP_SERVERS

    def test_dev_keeps_configured_bootstrap_servers(self, clean_env):
        clean_env.setenv("KAFKA_BOOTSTRAP_SERVERS", "kafka:9092")

        config = load_config(parse_args(["--dev"]))

        assert config.kafka.bootstrap_servers == "kafka:9092"

    def test_workers_flag_overrides_env(self, clean_env):
        clean_env.setenv("KAFKA_BOOTSTRAP_SERVERS", "kafka:9092")
        clean_env.setenv("CONSUMER_WORKER_COUNT", "2")

        config = load_config(parse_args(["--workers", "6"]))

        assert config.worker_count == 6

    def test_missing_bootstrap_raises(self, clean_env):
        with pytest.raises(ConfigurationError):
            load_config(parse_args([]))

    def test_pubsub_transport_loads_pubsub_config(self, clean_env):
        clean_env.setenv("GCP_PROJECT_ID", "media-project")
        clean_env.setenv("PUBSUB_SUBSCRIPTION_ID", "video-uploads-sub")
        clean_env.setenv("GOOGLE_APPLICATION_CREDENTIALS", "/secrets/sa.json")

        config = load_config(parse_args(["--transport", "pubsub", "--workers", "2"]))

        assert config.pubsub.subscription_id == "video-uploads-sub"
        assert config.kafka is None
        assert config.worker_count == 2

    def test_pubsub_transport_fails_fast_without_settings(self, clean_env):
        with pytest.raises(ConfigurationError, match="GCP_PROJECT_ID"):
            load_config(parse_args(["--transport", "pubsub"]))

    def test_unknown_transport_from_env_raises(self, clean_env):
        clean_env.setenv("CONSUMER_TRANSPORT", "rabbitmq")

        with pytest.raises(ConfigurationError, match="Unknown transport"):
            load_config(parse_args([]))


class TestCreateBroker:
    def test_kafka_config_builds_kafka_client(self, clean_env):
        clean_env.setenv("KAFKA_BOOTSTRAP_SERVERS", "kafka:9092")

        broker = create_broker(load_config(parse_args([])))

        assert isinstance(broker, KafkaBrokerClient)

    def test_pubsub_config_builds_pubsub_client(self, clean_env):
        clean_env.setenv("GCP_PROJECT_ID", "media-project")
        clean_env.setenv("PUBSUB_SUBSCRIPTION_ID", "video-uploads-sub")
        clean_env.setenv("GOOGLE_APPLICATION_CREDENTIALS", "/secrets/sa.json")

        broker = create_broker(load_config(parse_args(["--transport", "pubsub"])))

        assert isinstance(broker, PubSubBrokerClient)
        assert not broker.supports_dead_letter


class TestMain:
    def test_configuration_error_exits_nonzero(self, clean_env, tmp_path):
        with patch("event_consumer.__main__.load_dotenv"), patch(
            "event_consumer.__main__.setup_logging"
        ), patch("event_consumer.__main__.start_http_server") as start_http_server:
            exit_code = main(["--log-dir", str(tmp_path)])

        assert exit_code == 1
        start_http_server.assert_not_called()

    def test_runs_consumer_and_exits_cleanly(self, clean_env, tmp_path):
        clean_env.setenv("KAFKA_BOOTSTRAP_SERVERS", "kafka:9092")

        async def fake_run_consumer(config):
            assert config.worker_count == 3

        with patch("event_consumer.__main__.load_dotenv"), patch(
            "event_consumer.__main__.setup_logging"
        ), patch("event_consumer.__main__.start_http_server"), patch(
            "event_consumer.__main__.setup_signal_handlers"
        ), patch(
            "event_consumer.__main__.run_consumer", side_effect=fake_run_consumer
        ):
            exit_code = main(["--workers", "3", "--log-dir", str(tmp_path)])

        assert exit_code == 0
