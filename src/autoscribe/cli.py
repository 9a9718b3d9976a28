from __future__ import annotations

import argparse
import json
import logging

from .config import Config, ConfigError, import_campaigns, load_config
from .credentials import CredentialPool
from .db import DBConn, connect_db
from .errors import CampaignNotFound, StorageError
from .health import collect_signals
from .pipeline import build_services, run_dispatch
from .queue import WorkQueue
from .security.secrets import generate_master_key
from .storage import list_campaigns
from .utils import configure_logging, log_event


def _open(args: argparse.Namespace, logger: logging.Logger) -> tuple[Config, DBConn] | None:
    try:
        config = load_config(args.config)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return None
    try:
        conn = connect_db(config.paths.state_db)
    except StorageError as exc:
        log_event(logger, logging.ERROR, "storage_error", error=str(exc))
        return None
    return config, conn


def _cmd_discover(args: argparse.Namespace, logger: logging.Logger) -> int:
    opened = _open(args, logger)
    if opened is None:
        return 1
    config, conn = opened
    services = build_services(config, conn)
    campaign_ids = args.campaign_id or [c.campaign_id for c in list_campaigns(conn, active_only=True)]
    if not campaign_ids:
        log_event(
            logger,
            logging.WARNING,
            "no_campaigns",
            hint="Import campaigns with `autoscribe campaigns import campaigns.yml`",
        )
        return 1
    status = 0
    for campaign_id in campaign_ids:
        try:
            counts = services.run_discovery(campaign_id)
        except CampaignNotFound as exc:
            log_event(logger, logging.ERROR, "campaign_not_found", error=str(exc))
            status = 1
            continue
        log_event(logger, logging.INFO, "discovery_summary", campaign_id=campaign_id, **counts)
    return status


def _cmd_dispatch(args: argparse.Namespace, logger: logging.Logger) -> int:
    opened = _open(args, logger)
    if opened is None:
        return 1
    config, conn = opened
    services = build_services(config, conn)
    counts = run_dispatch(services, args.max_batch)
    log_event(logger, logging.INFO, "dispatch_summary", **counts)
    return 0


def _cmd_reclaim(args: argparse.Namespace, logger: logging.Logger) -> int:
    opened = _open(args, logger)
    if opened is None:
        return 1
    config, conn = opened
    queue = WorkQueue(conn, config.queue)
    reclaimed = queue.reclaim_stalled(args.ttl)
    log_event(logger, logging.INFO, "reclaim_summary", reclaimed=reclaimed)
    return 0


def _cmd_campaigns_import(args: argparse.Namespace, logger: logging.Logger) -> int:
    opened = _open(args, logger)
    if opened is None:
        return 1
    _, conn = opened
    try:
        imported = import_campaigns(conn, args.path)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1
    log_event(logger, logging.INFO, "campaigns_imported", count=len(imported), ids=",".join(imported))
    return 0


def _cmd_campaigns_list(args: argparse.Namespace, logger: logging.Logger) -> int:
    opened = _open(args, logger)
    if opened is None:
        return 1
    _, conn = opened
    campaigns = list_campaigns(conn)
    for campaign in campaigns:
        log_event(
            logger,
            logging.INFO,
            "campaign",
            campaign_id=campaign.campaign_id,
            status=campaign.status,
            sources=len(campaign.sources),
            provider_chain=",".join(campaign.provider_chain),
            error_streak=campaign.discovery_error_streak,
        )
    log_event(logger, logging.INFO, "campaigns_listed", count=len(campaigns))
    return 0


def _cmd_credentials_add(args: argparse.Namespace, logger: logging.Logger) -> int:
    opened = _open(args, logger)
    if opened is None:
        return 1
    config, conn = opened
    pool = CredentialPool(conn, config.rotation)
    try:
        credential = pool.add_credential(
            args.provider,
            args.key,
            label=args.label,
            per_minute_limit=args.per_minute,
            per_day_limit=args.per_day,
            priority=args.priority,
        )
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1
    print(credential.credential_id)
    return 0


def _cmd_credentials_list(args: argparse.Namespace, logger: logging.Logger) -> int:
    opened = _open(args, logger)
    if opened is None:
        return 1
    config, conn = opened
    pool = CredentialPool(conn, config.rotation)
    for credential in pool.list_credentials(args.provider):
        log_event(
            logger,
            logging.INFO,
            "credential",
            credential_id=credential.credential_id,
            provider=credential.provider,
            label=credential.label,
            status=credential.status.value,
            minute=f"{credential.current_minute_count}/{credential.per_minute_limit}",
            day=f"{credential.current_day_count}/{credential.per_day_limit}",
            failures=credential.consecutive_failure_count,
        )
    return 0


def _cmd_credentials_reactivate(args: argparse.Namespace, logger: logging.Logger) -> int:
    opened = _open(args, logger)
    if opened is None:
        return 1
    config, conn = opened
    pool = CredentialPool(conn, config.rotation)
    if not pool.reactivate(args.credential_id):
        log_event(logger, logging.WARNING, "credential_not_reactivated", credential_id=args.credential_id)
        return 1
    return 0


def _cmd_queue_stats(args: argparse.Namespace, logger: logging.Logger) -> int:
    opened = _open(args, logger)
    if opened is None:
        return 1
    config, conn = opened
    stats = WorkQueue(conn, config.queue).stats(args.campaign_id)
    print(json.dumps(stats, indent=2, sort_keys=True))
    return 0


def _cmd_queue_requeue(args: argparse.Namespace, logger: logging.Logger) -> int:
    opened = _open(args, logger)
    if opened is None:
        return 1
    config, conn = opened
    if not WorkQueue(conn, config.queue).requeue(args.item_id):
        log_event(logger, logging.WARNING, "queue_requeue_rejected", item_id=args.item_id)
        return 1
    return 0


def _cmd_signals(args: argparse.Namespace, logger: logging.Logger) -> int:
    opened = _open(args, logger)
    if opened is None:
        return 1
    config, conn = opened
    signals = collect_signals(conn, CredentialPool(conn, config.rotation), config.signals)
    print(json.dumps(signals, indent=2, sort_keys=True))
    return 0


def _cmd_keygen(args: argparse.Namespace, logger: logging.Logger) -> int:
    print(generate_master_key())
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="autoscribe", description="autoscribe CLI")
    parser.add_argument(
        "--config",
        dest="config",
        default=None,
        help="Path to config.yml (defaults to AS_CONFIG_PATH or built-in defaults)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    discover_parser = subparsers.add_parser("discover", help="Run discovery for campaigns")
    discover_parser.add_argument(
        "campaign_id",
        nargs="*",
        help="Campaign ids (defaults to every active campaign)",
    )
    discover_parser.set_defaults(func=_cmd_discover)

    dispatch_parser = subparsers.add_parser("dispatch", help="Run one dispatch cycle")
    dispatch_parser.add_argument(
        "--max-batch",
        type=int,
        default=None,
        help="Items leased per campaign (defaults to dispatch.max_batch_per_campaign)",
    )
    dispatch_parser.set_defaults(func=_cmd_dispatch)

    reclaim_parser = subparsers.add_parser("reclaim", help="Return expired leases to the queue")
    reclaim_parser.add_argument("--ttl", type=int, default=None, help="Lease TTL in seconds")
    reclaim_parser.set_defaults(func=_cmd_reclaim)

    campaigns_parser = subparsers.add_parser("campaigns", help="Manage campaigns")
    campaigns_subparsers = campaigns_parser.add_subparsers(dest="campaigns_command", required=True)
    campaigns_import = campaigns_subparsers.add_parser("import", help="Import campaigns from YAML")
    campaigns_import.add_argument("path", help="Path to campaigns.yml")
    campaigns_import.set_defaults(func=_cmd_campaigns_import)
    campaigns_list = campaigns_subparsers.add_parser("list", help="List campaigns")
    campaigns_list.set_defaults(func=_cmd_campaigns_list)

    credentials_parser = subparsers.add_parser("credentials", help="Manage provider credentials")
    credentials_subparsers = credentials_parser.add_subparsers(
        dest="credentials_command", required=True
    )
    credentials_add = credentials_subparsers.add_parser("add", help="Store an encrypted credential")
    credentials_add.add_argument("provider", help="Provider name used in provider chains")
    credentials_add.add_argument("key", help="API key material")
    credentials_add.add_argument("--label", default=None)
    credentials_add.add_argument("--per-minute", type=int, default=0, help="0 means unlimited")
    credentials_add.add_argument("--per-day", type=int, default=0, help="0 means unlimited")
    credentials_add.add_argument("--priority", type=int, default=100, help="Lower is preferred")
    credentials_add.set_defaults(func=_cmd_credentials_add)
    credentials_list = credentials_subparsers.add_parser("list", help="List credentials")
    credentials_list.add_argument("--provider", default=None)
    credentials_list.set_defaults(func=_cmd_credentials_list)
    credentials_reactivate = credentials_subparsers.add_parser(
        "reactivate", help="Return a suspended or rate limited credential to rotation"
    )
    credentials_reactivate.add_argument("credential_id")
    credentials_reactivate.set_defaults(func=_cmd_credentials_reactivate)

    queue_parser = subparsers.add_parser("queue", help="Work queue commands")
    queue_subparsers = queue_parser.add_subparsers(dest="queue_command", required=True)
    queue_stats = queue_subparsers.add_parser("stats", help="Show counts per status")
    queue_stats.add_argument("--campaign-id", default=None)
    queue_stats.set_defaults(func=_cmd_queue_stats)
    queue_requeue = queue_subparsers.add_parser("requeue", help="Return a failed item to pending")
    queue_requeue.add_argument("item_id", type=int)
    queue_requeue.set_defaults(func=_cmd_queue_requeue)

    signals_parser = subparsers.add_parser("signals", help="Print derived health signals")
    signals_parser.set_defaults(func=_cmd_signals)

    keygen_parser = subparsers.add_parser("keygen", help="Print a new base64url master key")
    keygen_parser.set_defaults(func=_cmd_keygen)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logger = configure_logging("autoscribe")
    try:
        return args.func(args, logger)
    except StorageError as exc:
        log_event(logger, logging.ERROR, "storage_error", error=str(exc))
        return 1
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1
