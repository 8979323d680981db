"""
Environment-driven settings for the relay.

Values come from the process environment; a `.env` file in the working
directory is loaded first when present (see `load_environment`).
"""

import os
from dataclasses import dataclass
from typing import Any, Dict, Optional

from dotenv import load_dotenv

from .errors import ConfigError

DEFAULT_TOPIC = "technews"
DEFAULT_MAILBOX = "Tech News"
DEFAULT_SINCE = "17-Jun-2025"


def load_environment(dotenv_path: Optional[str] = None) -> None:
    """Load `.env` without overriding variables already set."""
    load_dotenv(dotenv_path, override=False)


def _require(name: str) -> str:
    value = os.environ.get(name)
    if not value:
        raise ConfigError(f"{name} environment variable must be set")
    return value


def _int_env(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from None


@dataclass
class MailSettings:
    """IMAP account and mailbox selection."""

    user: str
    password: str
    host: str = "imap.gmail.com"
    port: int = 993
    mailbox: str = DEFAULT_MAILBOX
    since: Optional[str] = DEFAULT_SINCE
    max_retries: int = 3

    @classmethod
    def from_env(cls) -> "MailSettings":
        return cls(
            user=_require("EMAIL"),
            password=_require("EMAIL_PASSWORD"),
            host=os.environ.get("IMAP_HOST", "imap.gmail.com"),
            port=_int_env("IMAP_PORT", 993),
            mailbox=os.environ.get("IMAP_MAILBOX", DEFAULT_MAILBOX),
            # An empty IMAP_SINCE disables the date filter
            since=os.environ.get("IMAP_SINCE", DEFAULT_SINCE) or None,
            max_retries=_int_env("IMAP_MAX_RETRIES", 3),
        )


@dataclass
class KafkaSettings:
    """Connection settings for the Kafka cluster."""

    bootstrap_servers: str
    security_protocol: str = "SASL_SSL"
    sasl_mechanism: Optional[str] = "PLAIN"
    sasl_username: Optional[str] = None
    sasl_password: Optional[str] = None
    client_id: str = "technews-relay"
    topic: str = DEFAULT_TOPIC
    group_id: str = "news-consumer-group"

    @classmethod
    def from_env(cls) -> "KafkaSettings":
        servers = os.environ.get("BOOTSTRAP_SERVERS") or os.environ.get("BROKER_URL")
        if not servers:
            raise ConfigError("BOOTSTRAP_SERVERS (or BROKER_URL) environment variable must be set")
        return cls(
            bootstrap_servers=servers,
            security_protocol=os.environ.get("KAFKA_SECURITY_PROTOCOL", "SASL_SSL"),
            sasl_mechanism=os.environ.get("KAFKA_SASL_MECHANISM", "PLAIN") or None,
            sasl_username=os.environ.get("CLUSTER_API_KEY"),
            sasl_password=os.environ.get("CLUSTER_API_SECRET"),
            client_id=os.environ.get("KAFKA_CLIENT_ID", "technews-relay"),
            topic=os.environ.get("KAFKA_TOPIC", DEFAULT_TOPIC),
            group_id=os.environ.get("KAFKA_GROUP_ID", "news-consumer-group"),
        )

    def client_config(self) -> Dict[str, Any]:
        """librdkafka properties shared by producer and consumer."""
        config: Dict[str, Any] = {
            "bootstrap.servers": self.bootstrap_servers,
            "security.protocol": self.security_protocol,
            "client.id": self.client_id,
        }
        if self.sasl_mechanism and self.security_protocol.startswith("SASL"):
            config["sasl.mechanisms"] = self.sasl_mechanism
            if self.sasl_username:
                config["sasl.username"] = self.sasl_username
            if self.sasl_password:
                config["sasl.password"] = self.sasl_password
        return config


@dataclass
class RelaySettings:
    """Pipeline tuning shared by both drivers."""

    message_format: str = "avro"
    webhook_url: Optional[str] = None
    poll_interval: int = 300
    wrap_width: int = 230
    max_block_text: int = 2900
    publish_max_retries: int = 3
    webhook_max_retries: int = 3

    @classmethod
    def from_env(cls) -> "RelaySettings":
        message_format = os.environ.get("MESSAGE_FORMAT", "avro").lower()
        if message_format not in ("avro", "json"):
            raise ConfigError(f"MESSAGE_FORMAT must be 'avro' or 'json', got {message_format!r}")
        return cls(
            message_format=message_format,
            webhook_url=os.environ.get("SLACK_WEBHOOK_URL"),
            poll_interval=_int_env("POLL_INTERVAL", 300),
            wrap_width=_int_env("HTML_WRAP_WIDTH", 230),
            max_block_text=_int_env("MAX_BLOCK_TEXT", 2900),
            publish_max_retries=_int_env("PUBLISH_MAX_RETRIES", 3),
            webhook_max_retries=_int_env("WEBHOOK_MAX_RETRIES", 3),
        )

    def require_webhook(self) -> str:
        if not self.webhook_url:
            raise ConfigError("SLACK_WEBHOOK_URL environment variable must be set")
        return self.webhook_url
