from __future__ import annotations

import argparse
import datetime as dt
import logging
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import yaml
from rich.console import Console
from rich.table import Table

from .config import AppConfig, Settings, SourceSettings, build_config
from .dispatcher import DeliveryDispatcher
from .errors import GatewayError, SourceUnavailable, TransientDeliveryFailure
from .gateway import HttpPushGateway, PushGateway, PushMessage, RecordingGateway
from .logging_utils import render_fields_block
from .orchestrator import CycleSummary, Orchestrator
from .persistence import NotificationLedger, SnapshotStore, SubscriberStore
from .preferences import SubscriberPreference, preference_from_dict
from .sources import BallDontLieSource, SnapshotSource
from .templates import TemplateRegistry
from .utils import load_yaml_file
from .validation import ValidationReport, validate_config_data
from .version import __version__

LOGGER = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "/config/scorewatch.yaml"

EXIT_OK = 0
EXIT_CONFIG_ERROR = 1
EXIT_FAILURES = 2


@dataclass
class Runtime:
    settings: Settings
    gateway: PushGateway
    ledger: NotificationLedger
    snapshots: SnapshotStore
    subscribers: SubscriberStore
    dispatcher: DeliveryDispatcher
    orchestrator: Orchestrator
    sources: Dict[str, SnapshotSource]

    def close(self) -> None:
        for store in (self.ledger, self.snapshots, self.subscribers):
            store.close()
        self.gateway.close()
        for source in self.sources.values():
            close = getattr(source, "close", None)
            if callable(close):
                close()


def configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s | %(levelname)-8s | %(name)s\n%(message)s\n",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def load_app_config(path: Path) -> Optional[AppConfig]:
    """Load, validate and build the config; logs and returns None on any problem."""
    try:
        data = load_yaml_file(path)
    except (OSError, yaml.YAMLError) as exc:
        LOGGER.error("Failed to read config %s: %s", path, exc)
        return None

    report = validate_config_data(data)
    _log_report(report)
    if not report.is_valid:
        return None

    try:
        return build_config(data)
    except ValueError as exc:
        LOGGER.error("Invalid configuration: %s", exc)
        return None


def _log_report(report: ValidationReport) -> None:
    for issue in report.errors:
        LOGGER.error("%s: %s", issue.path, issue.message)
    for issue in report.warnings:
        LOGGER.warning("%s: %s", issue.path, issue.message)


def build_gateway(settings: Settings) -> PushGateway:
    gateway = settings.gateway
    if not gateway.url:
        LOGGER.warning("No push gateway URL configured; messages will be recorded, not sent")
        return RecordingGateway()
    return HttpPushGateway(gateway.url, token=gateway.token, timeout=gateway.timeout, headers=gateway.headers)


def build_sources(settings: Settings) -> Dict[str, SnapshotSource]:
    configured = dict(settings.sources)
    nba = configured.get("nba") or SourceSettings()
    return {
        "nba": BallDontLieSource(nba.api_key, base_url=nba.base_url, timeout=nba.timeout),
    }


def build_runtime(config: AppConfig) -> Runtime:
    settings = config.settings
    db_path = settings.database_path
    gateway = build_gateway(settings)
    ledger = NotificationLedger(db_path)
    snapshots = SnapshotStore(db_path)
    subscribers = SubscriberStore(db_path)
    dispatcher = DeliveryDispatcher(
        gateway,
        settings.delivery,
        registry=TemplateRegistry.from_settings(settings.templates),
        use_emoji=settings.gateway.use_emoji,
    )
    orchestrator = Orchestrator(ledger, snapshots, subscribers, dispatcher, thresholds=settings.detection)
    return Runtime(
        settings=settings,
        gateway=gateway,
        ledger=ledger,
        snapshots=snapshots,
        subscribers=subscribers,
        dispatcher=dispatcher,
        orchestrator=orchestrator,
        sources=build_sources(settings),
    )


def source_for(snapshot_id: str, sources: Dict[str, SnapshotSource]) -> Optional[SnapshotSource]:
    """Pick the source by the snapshot id's sport prefix (``nba_123`` -> ``nba``)."""
    prefix = snapshot_id.split("_", 1)[0].lower()
    return sources.get(prefix)


def render_cycle_table(summaries: Sequence[CycleSummary], console: Optional[Console] = None) -> None:
    console = console or Console()
    table = Table(title="Polling Cycle", show_lines=False)
    table.add_column("Snapshot", style="bold")
    for heading in ("Detected", "Retried", "Skipped", "Notified", "Failed", "Recipients", "Invalid"):
        table.add_column(heading, justify="right")
    table.add_column("Status")

    for summary in summaries:
        if summary.source_unavailable:
            status = "[yellow]⚠ source unavailable[/yellow]"
        elif summary.failed:
            status = "[red]✗ failures[/red]"
        else:
            status = "[green]✓ ok[/green]"
        table.add_row(
            summary.snapshot_id,
            str(summary.detected),
            str(summary.retried),
            str(summary.skipped),
            str(summary.notified),
            f"[red]{summary.failed}[/red]" if summary.failed else "0",
            str(summary.recipients),
            str(len(summary.invalid_addresses)),
            status,
        )
    console.print(table)


def run_poll(args: argparse.Namespace) -> int:
    configure_logging(args.verbose)
    config = load_app_config(args.config)
    if config is None:
        return EXIT_CONFIG_ERROR

    runtime = build_runtime(config)
    try:
        snapshot_ids: List[str] = list(args.snapshot_ids or [])
        if args.date:
            nba = runtime.sources["nba"]
            try:
                snapshot_ids.extend(snapshot.id for snapshot in nba.fetch_schedule(args.date))
            except SourceUnavailable as exc:
                LOGGER.error("Failed to fetch schedule for %s: %s", args.date.isoformat(), exc)
                return EXIT_FAILURES

        requests = []
        unknown = 0
        for snapshot_id in dict.fromkeys(snapshot_ids):
            source = source_for(snapshot_id, runtime.sources)
            if source is None:
                LOGGER.error("No data source for snapshot %s", snapshot_id)
                unknown += 1
                continue
            requests.append((snapshot_id, source))

        summaries = runtime.orchestrator.poll_many(requests, max_workers=args.workers)
        invalid = [address for summary in summaries for address in summary.invalid_addresses]
        if invalid:
            runtime.subscribers.remove_addresses(invalid)

        render_cycle_table(summaries)
        if unknown or any(not summary.ok for summary in summaries):
            return EXIT_FAILURES
        return EXIT_OK
    finally:
        runtime.close()


def run_test_push(args: argparse.Namespace) -> int:
    configure_logging(args.verbose)
    config = load_app_config(args.config)
    if config is None:
        return EXIT_CONFIG_ERROR

    gateway = build_gateway(config.settings)
    message = PushMessage(
        address=args.address,
        title=args.title,
        body=args.body,
        data={"eventType": "TEST"},
        priority="high",
    )
    try:
        results = gateway.send_batch([message])
    except (GatewayError, TransientDeliveryFailure) as exc:
        LOGGER.error("Test notification failed: %s", exc)
        return EXIT_FAILURES
    finally:
        gateway.close()

    if not results or not results[0].ok:
        error = results[0].error if results else "no result"
        LOGGER.error("Test notification rejected: %s", error)
        return EXIT_FAILURES
    LOGGER.info("Test notification sent")
    return EXIT_OK


def run_stats(args: argparse.Namespace) -> int:
    configure_logging(args.verbose)
    config = load_app_config(args.config)
    if config is None:
        return EXIT_CONFIG_ERROR

    db_path = config.settings.database_path
    ledger = NotificationLedger(db_path)
    snapshots = SnapshotStore(db_path)
    subscribers = SubscriberStore(db_path)
    try:
        stats = ledger.get_stats()
        table = Table(title="Scorewatch Stats")
        table.add_column("Metric", style="bold")
        table.add_column("Value", justify="right")
        table.add_row("Subscribers", str(subscribers.count()))
        table.add_row("Tracked snapshots", str(snapshots.count()))
        table.add_row("Ledger entries", str(stats["total"]))
        for state, count in sorted(stats["by_state"].items()):
            table.add_row(f"  {state}", str(count))
        for kind, count in sorted(stats["by_kind"].items()):
            table.add_row(f"  {kind}", str(count))
        Console().print(table)
    finally:
        for store in (ledger, snapshots, subscribers):
            store.close()
    return EXIT_OK


def run_validate(args: argparse.Namespace) -> int:
    configure_logging(args.verbose)
    try:
        data = load_yaml_file(args.config)
    except (OSError, yaml.YAMLError) as exc:
        LOGGER.error("Failed to read config %s: %s", args.config, exc)
        return EXIT_CONFIG_ERROR

    report = validate_config_data(data)
    console = Console()
    if report.is_valid:
        try:
            build_config(data)
        except ValueError as exc:
            console.print(f"[red]✗[/red] {exc}")
            return EXIT_CONFIG_ERROR

    for issue in report.errors:
        console.print(f"[red]✗ {issue.path}[/red]: {issue.message}")
    for issue in report.warnings:
        console.print(f"[yellow]⚠ {issue.path}[/yellow]: {issue.message}")
    if not report.is_valid:
        return EXIT_CONFIG_ERROR
    console.print(f"[green]✓[/green] {args.config} is valid")
    return EXIT_OK


def run_import_subscribers(args: argparse.Namespace) -> int:
    configure_logging(args.verbose)
    config = load_app_config(args.config)
    if config is None:
        return EXIT_CONFIG_ERROR

    try:
        with args.path.open("r", encoding="utf-8") as handle:
            documents = yaml.safe_load(handle) or []
    except (OSError, yaml.YAMLError) as exc:
        LOGGER.error("Failed to read subscribers file %s: %s", args.path, exc)
        return EXIT_CONFIG_ERROR
    if isinstance(documents, dict):
        documents = documents.get("subscribers") or []
    if not isinstance(documents, list):
        LOGGER.error("Subscribers file %s must contain a list of preference documents", args.path)
        return EXIT_CONFIG_ERROR

    preferences: List[SubscriberPreference] = []
    rejected = 0
    for index, document in enumerate(documents):
        try:
            if not isinstance(document, dict):
                raise ValueError("entry must be a mapping")
            preferences.append(preference_from_dict(document))
        except ValueError as exc:
            LOGGER.error("Skipping subscriber #%d: %s", index, exc)
            rejected += 1

    store = SubscriberStore(config.settings.database_path)
    try:
        for preference in preferences:
            store.upsert(preference)
        LOGGER.info(
            render_fields_block(
                "Subscribers Imported",
                {"Imported": len(preferences), "Rejected": rejected, "Total": store.count()},
            )
        )
    finally:
        store.close()
    return EXIT_FAILURES if rejected else EXIT_OK


def _parse_date(value: str) -> dt.date:
    try:
        return dt.date.fromisoformat(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"invalid date '{value}', expected YYYY-MM-DD") from exc


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="scorewatch", description="Sports event detection and push notifications.")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "--config",
        type=Path,
        default=Path(os.getenv("CONFIG_PATH", DEFAULT_CONFIG_PATH)),
        help="Path to scorewatch YAML config",
    )
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    poll = subparsers.add_parser("poll", help="Run a polling cycle for one or more snapshots")
    poll.add_argument("snapshot_ids", nargs="*", help="Snapshot ids such as nba_12345")
    poll.add_argument("--date", type=_parse_date, help="Also poll every NBA game scheduled on this date")
    poll.add_argument("--workers", type=int, default=4, help="Snapshots polled concurrently")
    poll.set_defaults(handler=run_poll)

    test_push = subparsers.add_parser("test-push", help="Send a test notification to one address")
    test_push.add_argument("address")
    test_push.add_argument("--title", default="Test Notification")
    test_push.add_argument("--body", default="This is a test notification from scorewatch.")
    test_push.set_defaults(handler=run_test_push)

    stats = subparsers.add_parser("stats", help="Show ledger and subscriber counts")
    stats.set_defaults(handler=run_stats)

    validate = subparsers.add_parser("validate", help="Validate the config file")
    validate.set_defaults(handler=run_validate)

    import_subscribers = subparsers.add_parser("import-subscribers", help="Upsert subscribers from a YAML file")
    import_subscribers.add_argument("path", type=Path, help="YAML list of subscriber preference documents")
    import_subscribers.set_defaults(handler=run_import_subscribers)
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command == "poll" and not args.snapshot_ids and not args.date:
        parser.error("poll requires at least one snapshot id or --date")
    return args.handler(args)


if __name__ == "__main__":
    sys.exit(main())
