import os
import unittest
from unittest.mock import patch

from technews_relay.config import KafkaSettings, MailSettings, RelaySettings
from technews_relay.errors import ConfigError


class TestMailSettings(unittest.TestCase):
    def test_defaults(self):
        env = {"EMAIL": "news@example.com", "EMAIL_PASSWORD": "secret"}
        with patch.dict(os.environ, env, clear=True):
            settings = MailSettings.from_env()

        self.assertEqual(settings.host, "imap.gmail.com")
        self.assertEqual(settings.port, 993)
        self.assertEqual(settings.mailbox, "Tech News")
        self.assertEqual(settings.since, "17-Jun-2025")

    def test_missing_credentials(self):
        with patch.dict(os.environ, {"EMAIL": "news@example.com"}, clear=True):
            with self.assertRaises(ConfigError):
                MailSettings.from_env()

    def test_empty_since_disables_filter(self):
        env = {"EMAIL": "a", "EMAIL_PASSWORD": "b", "IMAP_SINCE": "", "IMAP_PORT": "1993"}
        with patch.dict(os.environ, env, clear=True):
            settings = MailSettings.from_env()
        self.assertIsNone(settings.since)
        self.assertEqual(settings.port, 1993)

    def test_bad_port(self):
        env = {"EMAIL": "a", "EMAIL_PASSWORD": "b", "IMAP_PORT": "imaps"}
        with patch.dict(os.environ, env, clear=True):
            with self.assertRaises(ConfigError):
                MailSettings.from_env()


class TestKafkaSettings(unittest.TestCase):
    def test_broker_url_fallback(self):
        env = {"BROKER_URL": "broker:9092", "CLUSTER_API_KEY": "k", "CLUSTER_API_SECRET": "s"}
        with patch.dict(os.environ, env, clear=True):
            settings = KafkaSettings.from_env()

        self.assertEqual(settings.bootstrap_servers, "broker:9092")
        self.assertEqual(settings.topic, "technews")
        self.assertEqual(settings.group_id, "news-consumer-group")
        config = settings.client_config()
        self.assertEqual(config["sasl.username"], "k")
        self.assertEqual(config["sasl.password"], "s")

    def test_bootstrap_required(self):
        with patch.dict(os.environ, {}, clear=True):
            with self.assertRaises(ConfigError):
                KafkaSettings.from_env()


class TestRelaySettings(unittest.TestCase):
    def test_defaults(self):
        with patch.dict(os.environ, {}, clear=True):
            settings = RelaySettings.from_env()
        self.assertEqual(settings.message_format, "avro")
        self.assertEqual(settings.max_block_text, 2900)
        self.assertEqual(settings.wrap_width, 230)

    def test_unknown_format(self):
        with patch.dict(os.environ, {"MESSAGE_FORMAT": "xml"}, clear=True):
            with self.assertRaises(ConfigError):
                RelaySettings.from_env()

    def test_require_webhook(self):
        with self.assertRaises(ConfigError):
            RelaySettings().require_webhook()
        self.assertEqual(RelaySettings(webhook_url="https://hook").require_webhook(), "https://hook")


if __name__ == "__main__":
    unittest.main()
