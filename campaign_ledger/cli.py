"""
Ledger CLI - operator commands against the configured backend.

Usage:
    # Create the ledger_documents table (DoltDB backend)
    python -m campaign_ledger init-db

    # Replay event lists and repair mirror divergence
    python -m campaign_ledger reconcile
    python -m campaign_ledger reconcile --dry-run --json

    # Queries
    python -m campaign_ledger campaigns --org ORG_ID
    python -m campaign_ledger summary CMP-xxxx
    python -m campaign_ledger compliance CMP-xxxx Food
    python -m campaign_ledger history CMP-xxxx --type withdrawals
"""

import argparse
import json
import sys
from typing import Optional

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .config import load_config
from .db import create_backend
from .db.client import check_connection
from .services.ledger_service import LedgerService
from .utils.logger import get_logger

console = Console()


def _build_service(args: argparse.Namespace) -> LedgerService:
    config = load_config()
    if args.backend:
        config = config.with_overrides(backend=args.backend)
    return LedgerService.from_config(config=config, backend=create_backend(config.backend))


def _print_error(body: dict) -> int:
    console.print(f"[red]{body['errorType']}[/red]: {body['error']}")
    return 1


def cmd_init_db(args: argparse.Namespace) -> int:
    """Create the documents table."""
    from .db.dolt_backend import DoltBackend

    if not check_connection():
        console.print("[red]Cannot connect to DoltDB[/red] (check DOLT_HOST / DOLT_PORT / DOLT_DATABASE)")
        return 1
    DoltBackend().ensure_schema()
    console.print("[green]ledger_documents table ready[/green]")
    return 0


def cmd_reconcile(args: argparse.Namespace) -> int:
    """Retry queued propagation, then replay and repair."""
    service = _build_service(args)
    retried = service.reconciler.retry_pending()
    report = service.reconciler.sweep(repair=not args.dry_run)

    if args.json:
        print(json.dumps({"pending": retried, "report": report.to_dict()}, indent=2))
        return 2 if report.has_divergence and args.dry_run else 0

    summary = (
        f"Donors checked: {report.donors_checked}\n"
        f"Campaigns checked: {report.campaigns_checked}\n"
        f"Organizations checked: {report.organizations_checked}\n"
        f"Pending retried: {retried['retried']} ({retried['succeeded']} succeeded)\n"
        f"Divergences: {report.divergence_count}"
        + ("" if args.dry_run else f"\nPending cleared: {report.pending_cleared}")
    )
    style = "yellow" if report.has_divergence else "green"
    title = "Reconciliation (dry run)" if args.dry_run else "Reconciliation"
    console.print(Panel(summary, title=title, border_style=style))

    if report.has_divergence:
        table = Table(title="Findings")
        table.add_column("Kind", style="cyan")
        table.add_column("Ids")
        rows = [
            ("Missing donation refs", report.missing_refs),
            ("Orphan donation refs", report.orphan_refs),
            ("Stale campaigns", [f"{cid}: {', '.join(fields)}" for cid, fields in report.stale_campaigns.items()]),
            ("Stale donors", report.stale_donors),
            ("Stale organizations", report.stale_organizations),
            ("Missing index entries", report.missing_index_entries),
            ("Released claims", report.released_claims),
        ]
        for kind, ids in rows:
            if ids:
                table.add_row(kind, "\n".join(ids))
        console.print(table)

    # Divergence left unrepaired is a failure for scripted runs
    return 2 if report.has_divergence and args.dry_run else 0


def cmd_campaigns(args: argparse.Namespace) -> int:
    """List campaigns."""
    service = _build_service(args)
    campaigns = service.registry.list_campaigns(args.org)

    table = Table(title=f"Campaigns{f' for {args.org}' if args.org else ''}")
    table.add_column("Campaign", style="cyan")
    table.add_column("Title")
    table.add_column("Status", justify="center")
    table.add_column("Raised", justify="right")
    table.add_column("Target", justify="right")
    table.add_column("Compliance", justify="right")
    table.add_column("Trust", justify="right")
    for campaign in campaigns:
        title = campaign.title
        table.add_row(
            campaign.campaign_id,
            title[:30] + "..." if len(title) > 30 else title,
            campaign.status.value,
            str(campaign.raised_amount),
            str(campaign.target_amount),
            f"{campaign.compliance_rate:.1f}%",
            f"{campaign.trust_score:.1f}",
        )
    console.print(table)
    return 0


def cmd_summary(args: argparse.Namespace) -> int:
    """Show campaign projections and categories."""
    service = _build_service(args)
    body = service.campaign_summary({"campaignId": args.campaign_id})
    if "error" in body:
        return _print_error(body)
    if args.json:
        print(json.dumps(body, indent=2))
        return 0

    summary = (
        f"{body['title']} ({body['status']})\n"
        f"Raised {body['raisedAmount']} of {body['targetAmount']}\n"
        f"Budgeted {body['totalBudget']} (allocation delta {body['allocationDelta']})\n"
        f"Spent {body['totalSpent']}\n"
        f"Average fraud score {body['averageFraudScore']} | Compliance {body['complianceRate']}% | "
        f"Trust {body['trustScore']}"
    )
    console.print(Panel(summary, title=body["campaignId"], border_style="blue"))

    table = Table(title="Categories")
    table.add_column("Category", style="cyan")
    table.add_column("Budget", justify="right")
    table.add_column("Spent", justify="right")
    table.add_column("Remaining", justify="right")
    table.add_column("Used", justify="right")
    table.add_column("Compliant", justify="center")
    for category in body["categories"]:
        table.add_row(
            category["name"],
            category["allocatedAmount"],
            category["spentAmount"],
            category["remainingAmount"],
            f"{category['utilizationRate']:.1f}%",
            "[green]yes[/green]" if category["isCompliant"] else "[red]NO[/red]",
        )
    console.print(table)
    return 0


def cmd_compliance(args: argparse.Namespace) -> int:
    """Compliance of one category."""
    service = _build_service(args)
    body = service.compliance_query({"campaignId": args.campaign_id, "category": args.category})
    if "error" in body:
        return _print_error(body)
    print(json.dumps(body, indent=2))
    return 0


def cmd_history(args: argparse.Namespace) -> int:
    """Transaction history of a campaign."""
    service = _build_service(args)
    body = service.transaction_history({"campaignId": args.campaign_id, "type": args.type})
    if "error" in body:
        return _print_error(body)
    if args.json:
        print(json.dumps(body, indent=2))
        return 0

    table = Table(title=f"{body['campaignId']} transactions ({body['total']})")
    table.add_column("Type", style="cyan")
    table.add_column("Transaction")
    table.add_column("Category")
    table.add_column("Amount", justify="right")
    table.add_column("Score", justify="right")
    table.add_column("Timestamp")
    for donation in body["donations"]:
        table.add_row(
            "donation",
            donation["transactionId"],
            donation["category"],
            donation["amount"],
            f"{donation['fraudScore']:.1f}",
            donation["timestamp"],
        )
    for withdrawal in body["withdrawals"]:
        table.add_row(
            "withdrawal",
            withdrawal["transactionId"],
            withdrawal["category"],
            withdrawal["amount"],
            f"{withdrawal['aiVerificationScore']:.2f}",
            withdrawal["timestamp"],
        )
    console.print(table)
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Campaign ledger operator CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--backend", choices=["memory", "dolt"], help="Override the configured backend")
    parser.add_argument("--log-level", default="WARNING", help="Log level (default: WARNING)")
    subparsers = parser.add_subparsers(dest="command", help="Commands")

    subparsers.add_parser("init-db", help="Create the ledger_documents table in DoltDB")

    reconcile_parser = subparsers.add_parser("reconcile", help="Replay event lists and repair divergence")
    reconcile_parser.add_argument("--dry-run", action="store_true", help="Report only, do not repair")
    reconcile_parser.add_argument("--json", action="store_true", help="Print the report as JSON")

    campaigns_parser = subparsers.add_parser("campaigns", help="List campaigns")
    campaigns_parser.add_argument("--org", help="Only campaigns of this organization")

    summary_parser = subparsers.add_parser("summary", help="Show a campaign summary")
    summary_parser.add_argument("campaign_id", help="Campaign id")
    summary_parser.add_argument("--json", action="store_true", help="Print JSON")

    compliance_parser = subparsers.add_parser("compliance", help="Compliance of one category")
    compliance_parser.add_argument("campaign_id", help="Campaign id")
    compliance_parser.add_argument("category", help="Category name (case-sensitive)")

    history_parser = subparsers.add_parser("history", help="Transaction history of a campaign")
    history_parser.add_argument("campaign_id", help="Campaign id")
    history_parser.add_argument("--type", choices=["donations", "withdrawals", "all"], default="all")
    history_parser.add_argument("--json", action="store_true", help="Print JSON")

    args = parser.parse_args(argv)

    get_logger(log_level=args.log_level, configure_root=True)

    if args.command == "init-db":
        return cmd_init_db(args)
    elif args.command == "reconcile":
        return cmd_reconcile(args)
    elif args.command == "campaigns":
        return cmd_campaigns(args)
    elif args.command == "summary":
        return cmd_summary(args)
    elif args.command == "compliance":
        return cmd_compliance(args)
    elif args.command == "history":
        return cmd_history(args)
    else:
        parser.print_help()
        return 1


if __name__ == "__main__":
    sys.exit(main())
