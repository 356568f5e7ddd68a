"""
Admin utility for discount codes.

Usage:
  python scripts/manage_discount_codes.py create WELCOME50 50 --max-uses 100 --description "Welcome bonus"
  python scripts/manage_discount_codes.py view WELCOME50
  python scripts/manage_discount_codes.py deactivate WELCOME50
  python scripts/manage_discount_codes.py list

Talks to the database configured by the usual env vars (DATABASE_URL or DB_*).
"""

from __future__ import annotations

import argparse
import json
from datetime import datetime, timezone
from pathlib import Path
import sys
from typing import Any, Callable


# Allow `import seo_billing.*` from backend/ without installing the package
REPO_ROOT = Path(__file__).resolve().parents[1]
BACKEND_DIR = REPO_ROOT / "backend"
sys.path.insert(0, str(BACKEND_DIR))


from sqlalchemy.orm import Session  # noqa: E402

from seo_billing.core.time_utils import as_utc  # noqa: E402
from seo_billing.models.discount_code import DiscountCode  # noqa: E402
from seo_billing.services.discounts import DiscountService  # noqa: E402
from seo_billing.services.errors import BillingError  # noqa: E402


def _iso(value: datetime | None) -> str | None:
    return as_utc(value).isoformat() if value else None


def _parse_expires_at(value: str) -> datetime:
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"invalid date: {value!r} (use ISO 8601, e.g. 2026-12-31)") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def code_to_dict(code: DiscountCode, *, include_redemptions: bool = False) -> dict[str, Any]:
    data: dict[str, Any] = {
        "code": code.code,
        "credits_to_grant": code.credits_to_grant,
        "max_uses": code.max_uses,
        "current_uses": code.current_uses,
        "is_active": code.is_active,
        "expires_at": _iso(code.expires_at),
        "description": code.description,
        "created_at": _iso(code.created_at),
    }
    if include_redemptions:
        data["redemptions"] = [
            {
                "shop": r.shop,
                "credits_granted": r.credits_granted,
                "redeemed_at": _iso(r.redeemed_at),
            }
            for r in code.redemptions
        ]
    return data


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Manage discount codes.")
    sub = parser.add_subparsers(dest="command", required=True)

    create = sub.add_parser("create", help="Create a discount code.")
    create.add_argument("code")
    create.add_argument("credits", type=int)
    create.add_argument("--max-uses", type=int, default=None, help="Global cap across all shops.")
    create.add_argument("--expires-at", type=_parse_expires_at, default=None, help="ISO 8601 date/time.")
    create.add_argument("--description", default=None)

    view = sub.add_parser("view", help="Show a code and its redemptions.")
    view.add_argument("code")

    deactivate = sub.add_parser("deactivate", help="Deactivate a code.")
    deactivate.add_argument("code")

    sub.add_parser("list", help="List all codes, newest first.")
    return parser


def run(args: argparse.Namespace, db: Session) -> int:
    service = DiscountService(db)

    if args.command == "create":
        code = service.create_discount_code(
            args.code,
            args.credits,
            max_uses=args.max_uses,
            expires_at=args.expires_at,
            description=args.description,
        )
        print("Discount code created.")
        print(json.dumps(code_to_dict(code), indent=2))
        return 0

    if args.command == "view":
        code = service.get_discount_code(args.code)
        print(json.dumps(code_to_dict(code, include_redemptions=True), indent=2))
        return 0

    if args.command == "deactivate":
        code = service.deactivate_discount_code(args.code)
        print("Discount code deactivated.")
        print(json.dumps(code_to_dict(code), indent=2))
        return 0

    summaries = service.list_discount_codes()
    print(f"Found {len(summaries)} discount codes:\n")
    now = datetime.now(timezone.utc)
    for summary in summaries:
        code = summary.code
        status = "ACTIVE" if code.is_active else "INACTIVE"
        expired = " (EXPIRED)" if code.expires_at and as_utc(code.expires_at) <= now else ""
        uses = f"{code.current_uses}/{code.max_uses} uses" if code.max_uses else f"{code.current_uses} uses"
        print(f"[{status}] {code.code}{expired}")
        print(f"  Credits: {code.credits_to_grant}")
        print(f"  Usage: {uses}")
        print(f"  Redemptions: {summary.redemption_count}")
        if code.description:
            print(f"  Description: {code.description}")
        if code.expires_at:
            print(f"  Expires: {_iso(code.expires_at)}")
        print()
    return 0


def main(argv: list[str] | None = None, *, session_factory: Callable[[], Session] | None = None) -> int:
    args = build_parser().parse_args(argv)

    if session_factory is None:
        from seo_billing.core.database import SessionLocal

        session_factory = SessionLocal

    with session_factory() as db:
        try:
            return run(args, db)
        except BillingError as exc:
            print(f"Error: {exc}", file=sys.stderr)
            return 1


if __name__ == "__main__":
    raise SystemExit(main())
