# Package marker for the technews relay (IMAP -> Kafka -> Slack).

__version__ = "0.1.0"
