from __future__ import annotations

import argparse
import getpass
import json
from datetime import date
from pathlib import Path

from fiscal_receipts.config.settings import settings
from fiscal_receipts.db.engine import get_session, init_schema
from fiscal_receipts.security.cipher import KeyRing, generate_key
from fiscal_receipts.services.credentials import CredentialsService
from fiscal_receipts.services.receipt_history import search_receipts
from fiscal_receipts.services.receipt_lifecycle import ReceiptLifecycleService
from fiscal_receipts.utils.results import Err


def _key_ring() -> KeyRing:
    return KeyRing.from_settings(settings.encryption_keys, settings.encryption_key_version)


def _load_json_file(path: str) -> dict | list:
    p = Path(path)
    if not p.exists():
        raise RuntimeError(f"JSON file not found: {path}")
    return json.loads(p.read_text(encoding="utf-8"))


def _iso_date(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected yyyy-mm-dd, got '{value}'") from None


def _report(result, success: str) -> int:
    if result.ok:
        print(f"OK: {success}")
        return 0
    if isinstance(result, Err):
        kind, message = result.kind, result.detail
    else:
        kind, message = result.error_kind, result.error
    print(f"ERROR [{kind}]: {message}")
    return 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="fiscal-receipts")
    sub = parser.add_subparsers(dest="cmd", required=True)

    sub.add_parser("generate-key", help="Print a fresh 256-bit key (64 hex chars) for ENCRYPTION_KEYS.")
    sub.add_parser("init-db", help="Create missing tables in DATABASE_URL.")

    def owned(p: argparse.ArgumentParser) -> argparse.ArgumentParser:
        p.add_argument("--user-id", required=True, help="Owner id of the business.")
        p.add_argument("--business-id", type=int, required=True)
        return p

    p_save = owned(sub.add_parser("save-credentials", help="Encrypt and store portal credentials (prompts for secrets)."))
    p_save.add_argument("--tax-code", required=True)

    owned(sub.add_parser("verify-credentials", help="Test-login with the stored credentials and mark them verified."))

    p_emit = owned(sub.add_parser("emit", help="Issue a receipt from a JSON list of cart lines."))
    p_emit.add_argument("--idempotency-key", required=True)
    p_emit.add_argument(
        "--lines-json",
        required=True,
        help='Path to a JSON list: [{"description", "quantity", "gross_unit_price", "vat_code"}].',
    )
    p_emit.add_argument("--payment-method", default="CASH")
    p_emit.add_argument("--date", default=None, help="Receipt date yyyy-mm-dd (default: today).")

    p_void = owned(sub.add_parser("void", help="Void an accepted receipt."))
    p_void.add_argument("--document-id", type=int, required=True)
    p_void.add_argument("--idempotency-key", required=True)

    p_hist = owned(sub.add_parser("history", help="List issued receipts from the local DB."))
    p_hist.add_argument("--from", dest="date_from", type=_iso_date, default=None)
    p_hist.add_argument("--to", dest="date_to", type=_iso_date, default=None)
    p_hist.add_argument("--progressive", default=None)
    p_hist.add_argument("--status", default=None)

    sub.add_parser(
        "reencrypt-credentials",
        help="Re-encrypt stored credentials under ENCRYPTION_KEY_VERSION (run before retiring an old key).",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    """
    What it does:
    - Operator entrypoint for credential onboarding, receipt emission/void and history.

    Behavior:
    - Portal mode (mock/real) and keys come from settings; each command runs in one get_session() block.
    - Secrets are prompted for, never accepted as arguments.
    """
    args = build_parser().parse_args(argv)

    if args.cmd == "generate-key":
        print(generate_key())
        return 0

    if args.cmd == "init-db":
        init_schema()
        print("OK: schema ready")
        return 0

    if args.cmd == "history":
        with get_session() as session:
            items = search_receipts(
                session,
                args.user_id,
                args.business_id,
                date_from=args.date_from,
                date_to=args.date_to,
                progressive=args.progressive,
                status=args.status,
            )
        for item in items:
            created = f"{item.created_at:%Y-%m-%d %H:%M}" if item.created_at else "-"
            print(f"{item.id}\t{created}\t{item.status}\t{item.authority_progressive or '-'}\t{item.total}")
        return 0

    key_ring = _key_ring()

    if args.cmd == "save-credentials":
        password = getpass.getpass("Portal password: ")
        pin = getpass.getpass("Portal PIN: ")
        with get_session() as session:
            result = CredentialsService(key_ring=key_ring).save_credentials(
                session, args.user_id, args.business_id, args.tax_code, password, pin
            )
        return _report(result, f"credentials saved for business_id={args.business_id} (not verified yet)")

    if args.cmd == "verify-credentials":
        with get_session() as session:
            result = CredentialsService(key_ring=key_ring).verify_credentials(session, args.user_id, args.business_id)
        return _report(result, f"credentials verified for business_id={args.business_id}")

    if args.cmd == "reencrypt-credentials":
        with get_session() as session:
            count = CredentialsService(key_ring=key_ring).reencrypt_credentials(session)
        print(f"OK: re-encrypted {count} record(s) to key version {key_ring.active_version}")
        return 0

    service = ReceiptLifecycleService(key_ring=key_ring)

    if args.cmd == "emit":
        lines = _load_json_file(args.lines_json)
        if not isinstance(lines, list):
            raise RuntimeError("--lines-json must be a JSON list of cart lines.")
        with get_session() as session:
            result = service.emit_receipt(
                session,
                args.user_id,
                {
                    "business_id": args.business_id,
                    "idempotency_key": args.idempotency_key,
                    "lines": lines,
                    "payment_method": args.payment_method,
                    "date": args.date,
                },
            )
        if not result.ok:
            return _report(result, "")
        return _report(
            result,
            f"document_id={result.document_id} idtrx={result.authority_transaction_id} "
            f"progressive={result.authority_progressive}",
        )

    if args.cmd == "void":
        with get_session() as session:
            result = service.void_receipt(
                session,
                args.user_id,
                {
                    "business_id": args.business_id,
                    "document_id": args.document_id,
                    "idempotency_key": args.idempotency_key,
                },
            )
        if not result.ok:
            return _report(result, "")
        return _report(
            result,
            f"void_document_id={result.void_document_id} idtrx={result.authority_transaction_id}",
        )

    raise RuntimeError(f"Unknown command: {args.cmd}")


if __name__ == "__main__":
    raise SystemExit(main())
