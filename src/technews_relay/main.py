"""
CLI for the Tech News relay.

`produce` and `consume` run the two long-lived services; `preview` runs the
formatting pipeline on a saved message body and `history` reads the delivery
ledger, neither of which needs a broker.
"""

import asyncio
import json
import logging
import os
import signal
from pathlib import Path
from typing import Optional

import typer

from .body_parser import normalize_body
from .broker import KafkaPublisher, build_consumer
from .config import KafkaSettings, MailSettings, RelaySettings, load_environment
from .consumer import Deliverer
from .database import init_db, list_deliveries
from .envelope import EmailRecord, get_codec
from .errors import ConfigError
from .poller import ImapPoller
from .producer import DEFAULT_CONCURRENCY, Ingestor
from .slack import SlackWebhook, build_payloads

logger = logging.getLogger(__name__)

app = typer.Typer(
    help="Relay Tech News newsletters from an IMAP mailbox to Slack through Kafka.",
    no_args_is_help=True,
    add_completion=False,
)


def _configure_logging() -> None:
    level_name = os.environ.get("LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )


@app.callback()
def main():
    load_environment()
    _configure_logging()


def _install_signal_handlers(stop_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows event loops; Ctrl+C still raises KeyboardInterrupt
            pass


def _fail(error: Exception) -> None:
    typer.echo(f"Configuration error: {error}", err=True)
    raise typer.Exit(code=2)


@app.command()
def produce(
    once: bool = typer.Option(False, "--once", help="Run a single fetch cycle and exit."),
    poll_interval: Optional[int] = typer.Option(
        None, help="Seconds between fetch cycles (defaults to POLL_INTERVAL env or 300)."
    ),
    concurrency: int = typer.Option(DEFAULT_CONCURRENCY, help="Number of emails to process in parallel."),
):
    """Fetch unread emails and publish them to Kafka."""
    try:
        mail = MailSettings.from_env()
        kafka = KafkaSettings.from_env()
        relay = RelaySettings.from_env()
        codec = get_codec(relay.message_format)
    except (ConfigError, ValueError) as e:
        _fail(e)

    interval = poll_interval if poll_interval is not None else relay.poll_interval

    logger.info("Starting Tech News producer")
    logger.info(f"Mailbox: {mail.mailbox} on {mail.host}")
    logger.info(f"Topic: {kafka.topic} ({codec.name})")
    if not once:
        logger.info(f"Poll Interval: {interval}s")

    publisher = KafkaPublisher(kafka, max_retries=relay.publish_max_retries)

    async def _run():
        stop_event = asyncio.Event()
        _install_signal_handlers(stop_event)
        ingestor = Ingestor(
            poller_factory=lambda: ImapPoller(mail),
            publisher=publisher,
            codec=codec,
            topic=kafka.topic,
            settings=relay,
            since=mail.since,
            stop_event=stop_event,
        )
        if once:
            return await ingestor.run_cycle(concurrency=concurrency)
        await ingestor.run_forever(interval, concurrency=concurrency)

    try:
        asyncio.run(_run())
    finally:
        publisher.close()


@app.command()
def consume(
    group_id: Optional[str] = typer.Option(None, help="Consumer group (defaults to KAFKA_GROUP_ID env)."),
):
    """Consume records from Kafka and post them to Slack."""
    try:
        kafka = KafkaSettings.from_env()
        relay = RelaySettings.from_env()
        webhook_url = relay.require_webhook()
        codec = get_codec(relay.message_format)
    except (ConfigError, ValueError) as e:
        _fail(e)

    init_db()
    logger.info("Starting Tech News consumer")
    logger.info(f"Topic: {kafka.topic} ({codec.name}), group: {group_id or kafka.group_id}")

    deliverer = Deliverer(
        consumer=build_consumer(kafka, group_id),
        codec=codec,
        webhook=SlackWebhook(webhook_url, max_retries=relay.webhook_max_retries),
        max_block_text=relay.max_block_text,
    )

    async def _run():
        stop_event = asyncio.Event()
        _install_signal_handlers(stop_event)
        await deliverer.run(stop_event)

    asyncio.run(_run())


@app.command()
def preview(
    path: Path = typer.Argument(..., exists=True, dir_okay=False, help="Raw TEXT part of an email."),
    subject: str = typer.Option("*No Subject*", help="Subject shown in the header block."),
    encoding: str = typer.Option("quoted-printable", help="Content-Transfer-Encoding of the file."),
    max_len: int = typer.Option(2900, help="Maximum characters per block."),
    hyperlink: bool = typer.Option(True, "--hyperlink/--no-hyperlink", help="Merge headings with the URL below them."),
    as_json: bool = typer.Option(False, "--json", help="Print the webhook payloads as JSON."),
):
    """Show how a saved email body would be posted to Slack."""
    body = normalize_body(path.read_bytes(), transfer_encoding=encoding)
    record = EmailRecord(seqno=0, subject=subject, body=body)
    payloads = build_payloads(record, max_len=max_len, hyperlink=hyperlink)

    if as_json:
        typer.echo(json.dumps(payloads, indent=2))
        return

    for payload in payloads:
        for block in payload["blocks"]:
            typer.echo(block["text"]["text"])
            typer.echo("-" * 40)


@app.command()
def history(
    limit: int = typer.Option(20, help="Number of entries to list"),
    human: bool = typer.Option(False, "--human", help="Human-readable output instead of JSON")
):
    """View records already delivered to Slack."""
    init_db()
    deliveries = list_deliveries(limit=limit)

    if human:
        if not deliveries:
            typer.echo("No deliveries recorded.")
        for entry in deliveries:
            typer.echo(
                f"{entry['delivered_at']} - #{entry['seqno']} {entry['subject']} "
                f"({entry['payload_count']} message(s))"
            )
    else:
        typer.echo(json.dumps(deliveries, default=str))


if __name__ == "__main__":
    app()
