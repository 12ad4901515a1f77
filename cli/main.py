"""
Command-line interface for the HD Wallet Payments gateway.
"""

import argparse
import json
import sys

from hdwallet_payments import PaymentGateway, Settings
from hdwallet_payments.config import get_config_summary
from hdwallet_payments.exceptions import ConfigurationError, HDWalletPaymentsError
from hdwallet_payments.logging_config import LEVELS, setup_logging
from hdwallet_payments.models import BackupReason


def create_gateway(args: argparse.Namespace) -> PaymentGateway:
    overrides = {}
    if args.data_dir:
        overrides["data_dir"] = args.data_dir
    if args.network:
        overrides["network"] = args.network
    return PaymentGateway(Settings.from_env(**overrides))


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, default=str))


def cmd_status(args: argparse.Namespace) -> None:
    gateway = create_gateway(args)
    status = gateway.get_database_status(force=True)
    if args.json:
        _print_json(status.to_dict())
    else:
        print(f"Database status ({gateway.settings.data_dir}):")
        for path, file_status in status.files.items():
            marker = "✅" if file_status.health.value == "healthy" else "❌"
            required = "required" if file_status.required else "optional"
            print(f"  {marker} {path}: {file_status.health.value} ({required})")
            if file_status.error:
                print(f"      {file_status.error}")
        if status.issues:
            print("\nIssues:")
            for issue in status.issues:
                print(f"  - {issue}")
        print(f"\nOverall: {'healthy' if status.is_healthy else 'NOT healthy'}")
    if not status.is_healthy:
        sys.exit(2)


def cmd_backups(args: argparse.Namespace) -> None:
    gateway = create_gateway(args)
    records = gateway.list_backups(args.source)
    if args.json:
        _print_json([record.to_dict() for record in records])
        return
    if not records:
        print("No backups found.")
        return
    print(f"{len(records)} backup(s), newest first:")
    for record in records:
        print(f"  {record.file_name}  {record.reason.value:<11} {record.size_bytes:>8} bytes")


def cmd_backup(args: argparse.Namespace) -> None:
    gateway = create_gateway(args)
    records = gateway.create_backup(BackupReason(args.reason))
    if args.json:
        _print_json([record.to_dict() for record in records])
        return
    print(f"Created {len(records)} backup(s):")
    for record in records:
        print(f"  {record.path}")


def cmd_restore(args: argparse.Namespace) -> None:
    gateway = create_gateway(args)
    if args.auto:
        result = gateway.auto_recover()
        if args.json:
            _print_json(result)
        else:
            print(result["message"])
            for item in result["results"]:
                outcome = item.get("message") if item["success"] else item.get("error")
                print(f"  {'✅' if item['success'] else '❌'} {item.get('file')}: {outcome}")
        if not result["success"]:
            sys.exit(1)
        return

    if not args.file:
        print("Restore error: either --file or --auto is required")
        sys.exit(1)
    result = gateway.restore_backup(args.file, force=args.force, snapshot_current=not args.no_backup)
    if args.json:
        _print_json(result.to_dict())
    elif result.success:
        print(result.message)
    else:
        print(f"Restore error: {result.error}")
    if not result.success:
        sys.exit(1)


def cmd_cleanup(args: argparse.Namespace) -> None:
    gateway = create_gateway(args)
    result = gateway.cleanup_backups(args.max_age_days)
    if args.json:
        _print_json(result)
        return
    print(f"Deleted {result['deletedCount']} backup(s) older than {result['cutoff']}")
    for name in result["deleted"]:
        print(f"  - {name}")


def cmd_init(args: argparse.Namespace) -> None:
    gateway = create_gateway(args)
    result = gateway.initialize(create_wallet=args.create_wallet)
    if args.json:
        _print_json(result)
    else:
        for name in result["created"]:
            print(f"Created {name}")
        for item in result["recovered"]:
            print(f"Recovered {item.get('file')}: {item.get('message') or item.get('error')}")
        if result["walletCreated"]:
            print("Generated a new wallet mnemonic. Back up the address book now.")
        print(f"Initial backups: {len(result['initialBackups'])}")
        print("Initialization complete!" if result["success"] else "Initialization finished with issues.")
    if not result["success"]:
        sys.exit(1)


def cmd_balance(args: argparse.Namespace) -> None:
    gateway = create_gateway(args)
    result = gateway.get_wallet_balance(timeout=args.timeout)
    if args.json:
        _print_json(result)
        return
    print(f"Root address: {result['address']}")
    print(f"Total balance: {result['totalBalance']} ETH")
    print(f"Verified payments: {result['verifiedBalance']} ETH")
    print(f"Wrong payments: {result['wrongPaymentsBalance']} ETH")
    for row in result["addresses"]:
        suffix = f" (error: {row['error']})" if row["error"] else ""
        print(f"  {row['address']}: {row['balance']} ETH{suffix}")


def cmd_release(args: argparse.Namespace) -> None:
    gateway = create_gateway(args)
    if args.all:
        result = gateway.release_all_funds(max_index=args.max_index)
        if args.json:
            _print_json(result)
        else:
            print(f"Released from {result['released']} address(es), {result['failed']} failed")
            for item in result["results"]:
                detail = item.get("txHash") if item["success"] else item.get("error")
                print(f"  {'✅' if item['success'] else '❌'} {item['address']}: {detail}")
        if not result["success"]:
            sys.exit(1)
        return

    result = gateway.release_funds(address=args.address, amount=args.amount, wait=not args.no_wait)
    if args.json:
        _print_json(result)
    else:
        print(f"Transaction {result['txHash']}: {result['state']}")
        print(f"  From: {result['from']}")
        print(f"  To:   {result['to']}")
        if result.get("amount"):
            print(f"  Amount: {result['amount']} ETH")
        if result.get("signerFallback"):
            print(f"  Signer fallback used: {result['signerFallback']['usedSigner']}")


def cmd_config(args: argparse.Namespace) -> None:
    overrides = {"data_dir": args.data_dir} if args.data_dir else {}
    if args.network:
        overrides["network"] = args.network
    _print_json(get_config_summary(Settings.from_env(**overrides)))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="HD Wallet Payments Command Line Interface",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s --data-dir ./data init --create-wallet
  %(prog)s --data-dir ./data status
  %(prog)s --data-dir ./data backup
  %(prog)s --data-dir ./data restore --auto
  %(prog)s --data-dir ./data restore --file merchant_transactions.json.manual.2025-05-04T10-11-12.123Z.bak
  %(prog)s --data-dir ./data cleanup --max-age-days 14
        """,
    )
    parser.add_argument("--data-dir", help="Directory holding the ledger, address book and backups")
    parser.add_argument("--network", help="Network name (mainnet or sepolia)")
    parser.add_argument("--json", action="store_true", help="Print machine-readable JSON")
    parser.add_argument("--log-level", choices=LEVELS, type=str.upper, help="Console log level")
    parser.add_argument("--log-file", help="Also write logs to this rotating file")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    status_parser = subparsers.add_parser("status", help="Check critical file integrity")
    status_parser.set_defaults(func=cmd_status)

    backups_parser = subparsers.add_parser("backups", help="List backups")
    backups_parser.add_argument("--source", help="Only list backups of this file (basename)")
    backups_parser.set_defaults(func=cmd_backups)

    backup_parser = subparsers.add_parser("backup", help="Back up every critical file")
    backup_parser.add_argument(
        "--reason",
        default=BackupReason.MANUAL.value,
        choices=[BackupReason.MANUAL.value, BackupReason.SCHEDULED.value],
        help="Reason recorded in the backup file name",
    )
    backup_parser.set_defaults(func=cmd_backup)

    restore_parser = subparsers.add_parser("restore", help="Restore from a backup")
    restore_parser.add_argument("--file", help="Backup file name or path")
    restore_parser.add_argument("--auto", action="store_true", help="Restore every bad file from its newest valid backup")
    restore_parser.add_argument("--force", action="store_true", help="Skip backup validation")
    restore_parser.add_argument("--no-backup", action="store_true", help="Do not snapshot the current file first")
    restore_parser.set_defaults(func=cmd_restore)

    cleanup_parser = subparsers.add_parser("cleanup", help="Delete old backups")
    cleanup_parser.add_argument("--max-age-days", type=int, help="Maximum backup age in days")
    cleanup_parser.set_defaults(func=cmd_cleanup)

    init_parser = subparsers.add_parser("init", help="Initialize the data directory")
    init_parser.add_argument("--create-wallet", action="store_true", help="Generate a mnemonic if none is stored")
    init_parser.set_defaults(func=cmd_init)

    balance_parser = subparsers.add_parser("balance", help="Show HD wallet balances")
    balance_parser.add_argument("--timeout", type=float, help="Overall time budget in seconds")
    balance_parser.set_defaults(func=cmd_balance)

    release_parser = subparsers.add_parser("release", help="Release funds to the merchant address")
    release_parser.add_argument("--address", help="Derived address to release from (root wallet by default)")
    release_parser.add_argument("--amount", help="Amount in ETH (whole balance minus fees by default)")
    release_parser.add_argument("--all", action="store_true", help="Sweep every funded derived address")
    release_parser.add_argument("--max-index", type=int, default=50, help="Highest index swept with --all")
    release_parser.add_argument("--no-wait", action="store_true", help="Do not wait for confirmation")
    release_parser.set_defaults(func=cmd_release)

    config_parser = subparsers.add_parser("config", help="Show the effective configuration")
    config_parser.set_defaults(func=cmd_config)
    return parser


def main(argv=None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        sys.exit(1)
    if args.log_level or args.log_file:
        setup_logging(level=args.log_level or "INFO", log_file=args.log_file, clear_handlers=True)
    try:
        args.func(args)
    except ConfigurationError as e:
        print(f"Configuration error: {e}")
        sys.exit(1)
    except HDWalletPaymentsError as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
